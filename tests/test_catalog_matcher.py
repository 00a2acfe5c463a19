from app.services.catalog_matcher import (
    CatalogItem,
    extract_series_tokens,
    extract_volume_from_title,
    extract_volume_number,
    parse_catalog_item,
    select_best_product_match,
)


def _item(item_id, title, stock=0):
    return CatalogItem(id=item_id, title=title, stock=stock)


class TestSelectBestProductMatch:
    def test_volume_match_prefers_stock(self):
        items = [
            _item("1", "Naruto tomo 5", stock=0),
            _item("2", "Naruto tomo 5", stock=3),
            _item("3", "Naruto tomo 6", stock=10),
        ]
        best = select_best_product_match(items, ["Naruto tomo 5"], "quiero naruto tomo 5")
        assert best.id == "2"

    def test_missing_volume_falls_back_to_series(self):
        items = [_item("1", "Naruto tomo 5", stock=1), _item("2", "Naruto tomo 6", stock=10)]
        best = select_best_product_match(items, ["Naruto"], "naruto tomo 9")
        assert best.id == "2"

    def test_no_stock_anywhere_returns_first(self):
        items = [_item("1", "Naruto tomo 1"), _item("2", "Naruto tomo 2")]
        assert select_best_product_match(items, ["Naruto"], "naruto").id == "1"

    def test_no_series_match_returns_none(self):
        items = [_item("1", "Naruto tomo 1", stock=5)]
        assert select_best_product_match(items, ["One Piece"], "one piece") is None

    def test_empty_items(self):
        assert select_best_product_match([], ["Naruto"], "naruto") is None

    def test_series_tokens_match_ignoring_accents(self):
        items = [_item("1", "Pokémon Escarlata", stock=2)]
        assert select_best_product_match(items, ["pokemon"], "pokemon").id == "1"

    def test_series_tokens_match_inside_words(self):
        items = [_item("1", "Boxset Borutonaruto", stock=1)]
        assert select_best_product_match(items, ["naruto"], "naruto").id == "1"


class TestVolumeExtraction:
    def test_volume_from_text(self):
        assert extract_volume_number("quiero el tomo 12", []) == 12

    def test_volume_from_entities(self):
        assert extract_volume_number("quiero este", ["Berserk vol 3"]) == 3

    def test_title_keyword(self):
        assert extract_volume_from_title("One Piece Vol 03") == 3

    def test_title_trailing_number(self):
        assert extract_volume_from_title("Dragon Ball 12") == 12

    def test_title_dimensions_are_not_volumes(self):
        assert extract_volume_from_title("Poster Naruto 30 x 40") is None

    def test_title_without_number(self):
        assert extract_volume_from_title("Funko Goku") is None


class TestSeriesTokens:
    def test_longest_entity_wins_and_stopwords_drop(self):
        assert extract_series_tokens(["Naruto", "Attack on Titan tomo 2"], "") == ["attack", "titan"]

    def test_falls_back_to_text(self):
        assert extract_series_tokens([], "Berserk") == ["berserk"]


class TestParseCatalogItem:
    def test_valid_item(self):
        result = parse_catalog_item(
            {
                "id": 10,
                "title": " Naruto 1 ",
                "stock": 4,
                "price": {"amount": 9500, "currency": "ARS"},
                "url": "https://example.com/naruto-1",
                "image": "ftp://nope",
                "categories": ["Mangas", ""],
            }
        )
        assert result.ok
        item = result.value
        assert item.id == "10"
        assert item.title == "Naruto 1"
        assert item.amount == 9500.0
        assert item.product_url == "https://example.com/naruto-1"
        assert item.thumbnail_url is None
        assert item.categories == ["Mangas"]

    def test_missing_title_fails(self):
        result = parse_catalog_item({"id": 1})
        assert result.ok is False
        assert result.error_code == "invalid_item"

    def test_non_numeric_stock_and_price(self):
        item = parse_catalog_item({"id": "a", "title": "X", "stock": "many", "amount": True}).value
        assert item.stock == 0
        assert item.amount is None
