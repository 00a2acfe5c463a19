from app.services.recommendation_signals import (
    detect_franchises,
    detect_recommendation_type,
    detect_recommendation_types,
    format_category_label,
    franchise_label,
    franchise_query,
    levenshtein_distance,
    resolve_recommendation_disambiguation,
    resolve_volume_signals,
    suggested_type_options,
)


def _decide(text="recomendame naruto", total=20, preferred=(), suggested=()):
    return resolve_recommendation_disambiguation(
        text=text,
        franchise="naruto",
        suggested_types=list(suggested),
        total_candidates=total,
        preferred_types=list(preferred),
        franchise_threshold=12,
        volume_threshold=6,
    )


class TestDetectFranchises:
    def test_exact_alias(self):
        assert detect_franchises("quiero mangas de naruto") == ["naruto"]

    def test_alias_in_entities(self):
        assert detect_franchises("algo de esto", ["Kimetsu no Yaiba"]) == ["demon_slayer"]

    def test_ties_sorted_by_key(self):
        assert detect_franchises("goku y luffy") == ["dragon_ball", "one_piece"]

    def test_typo_tolerant_single_match(self):
        assert detect_franchises("narutoo") == ["naruto"]

    def test_nothing(self):
        assert detect_franchises("hola") == []
        assert detect_franchises("") == []


class TestRecommendationTypes:
    def test_single_type(self):
        assert detect_recommendation_type("quiero un funko") == "merch_funko"

    def test_types_ordered_by_table(self):
        assert detect_recommendation_types("mangas", ["figura de goku"]) == ["merch_figuras", "mangas"]

    def test_no_type(self):
        assert detect_recommendation_type("hola") is None


class TestVolumeSignals:
    def test_volume_number(self):
        signals = resolve_volume_signals("quiero el tomo 3")
        assert signals.has_volume_signal is True
        assert signals.volume_number == 3

    def test_latest(self):
        signals = resolve_volume_signals("los ultimos lanzamientos")
        assert signals.wants_latest is True
        assert signals.volume_number is None

    def test_start(self):
        assert resolve_volume_signals("desde el inicio").wants_start is True

    def test_none(self):
        assert resolve_volume_signals("recomendame algo").has_volume_signal is False


class TestDisambiguation:
    def test_broad_franchise_asks_category(self):
        decision = _decide(total=20)
        assert decision.needs_disambiguation is True
        assert decision.reason == "franchise_scope"

    def test_manga_preference_asks_volume(self):
        decision = _decide(total=8, preferred=["mangas"])
        assert decision.needs_disambiguation is True
        assert decision.reason == "volume_scope"

    def test_volume_signal_skips_questions(self):
        decision = _decide(text="naruto tomo 4", total=30, preferred=["mangas"])
        assert decision.needs_disambiguation is False

    def test_few_candidates(self):
        assert _decide(total=3).needs_disambiguation is False


class TestLabels:
    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3

    def test_category_labels(self):
        assert format_category_label("merch_ropa_buzos") == "ropa y accesorios"
        assert format_category_label("juego_rol") == "juegos"
        assert format_category_label(None) == "productos"

    def test_franchise_query_and_label(self):
        assert franchise_query("one_piece") == "one piece"
        assert franchise_label("one_piece") == "One Piece"
        assert franchise_query("unknown_key") == "unknown key"

    def test_suggested_type_options(self):
        assert suggested_type_options([]) == ["mangas/comics", "figuras y coleccionables", "ropa/accesorios"]
        assert suggested_type_options(["mangas", "merch_funko", "merch_figuras"]) == [
            "mangas",
            "figuras y coleccionables",
        ]
