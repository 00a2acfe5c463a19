from app.services.catalog_matcher import CatalogItem
from app.services.flows.history import HistoryRow
from app.services.price_comparison import (
    CHEAPEST,
    DEFAULT_THUMBNAIL_URL,
    MOST_EXPENSIVE,
    SNAPSHOT_KEY,
    CatalogSnapshotItem,
    build_catalog_snapshot,
    parse_catalog_snapshot,
    price_comparison_message,
    resolve_latest_catalog_snapshot,
    resolve_price_comparison_request,
    select_price_comparison_item,
)


def _entry(item_id, amount, **overrides):
    entry = {
        "id": item_id,
        "title": f"Producto {item_id}",
        "productUrl": f"https://store.example.com/p/{item_id}",
        "thumbnailUrl": None,
        "currency": "ARS",
        "amount": amount,
    }
    entry.update(overrides)
    return entry


class TestRequest:
    def test_cheapest(self):
        assert resolve_price_comparison_request("cual es el mas barato?") == CHEAPEST
        assert resolve_price_comparison_request("cual sale menos") == CHEAPEST

    def test_most_expensive(self):
        assert resolve_price_comparison_request("y el más caro?") == MOST_EXPENSIVE

    def test_plain_cheap_is_not_comparison(self):
        assert resolve_price_comparison_request("busco algo barato") is None
        assert resolve_price_comparison_request("") is None


class TestSnapshot:
    def test_invalid_entries_dropped(self):
        parsed = parse_catalog_snapshot(
            [
                _entry("1", 1500),
                _entry("2", "1500"),
                _entry("3", 900, productUrl="ftp://nope"),
                _entry("4", 700, title=" "),
                "garbage",
            ]
        )
        assert [item.id for item in parsed] == ["1"]
        assert parsed[0].thumbnailUrl == DEFAULT_THUMBNAIL_URL

    def test_latest_non_empty_snapshot(self):
        rows = [
            HistoryRow(sender="bot", content="...", metadata={SNAPSHOT_KEY: []}),
            HistoryRow(sender="user", content="...", metadata={SNAPSHOT_KEY: [_entry("9", 1)]}),
            HistoryRow(sender="bot", content="...", metadata={SNAPSHOT_KEY: [_entry("1", 100), _entry("2", 50)]}),
        ]
        assert [item.id for item in resolve_latest_catalog_snapshot(rows)] == ["1", "2"]

    def test_build_skips_unpriced_items(self):
        items = [
            CatalogItem(id="1", title="A", product_url="https://x/1", amount=10.0),
            CatalogItem(id="2", title="B", product_url="https://x/2"),
            CatalogItem(id="3", title="C", amount=5.0),
        ]
        snapshot = build_catalog_snapshot(items)
        assert [entry["id"] for entry in snapshot] == ["1"]
        assert snapshot[0]["productUrl"] == "https://x/1"

    def test_build_is_capped(self):
        items = [CatalogItem(id=str(i), title="A", product_url="https://x", amount=1.0) for i in range(15)]
        assert len(build_catalog_snapshot(items)) == 10


class TestSelection:
    def _items(self):
        return parse_catalog_snapshot([_entry("1", 1500), _entry("2", 900), _entry("3", 900), _entry("4", 2000)])

    def test_cheapest_first_wins_ties(self):
        assert select_price_comparison_item(CHEAPEST, self._items()).id == "2"

    def test_most_expensive(self):
        assert select_price_comparison_item(MOST_EXPENSIVE, self._items()).id == "4"

    def test_empty(self):
        assert select_price_comparison_item(CHEAPEST, []) is None

    def test_message(self):
        item = CatalogSnapshotItem("1", "Naruto 01", "https://x/1", DEFAULT_THUMBNAIL_URL, "ARS", 1500.0)
        assert price_comparison_message(CHEAPEST, item, 3) == (
            'De los 3 productos que te mostre, el mas barato es "Naruto 01" por ARS 1.500,00.'
        )
