from app.services.flows.history import HistoryRow
from app.services.flows.recommendations_memory import (
    LAST_FRANCHISE_KEY,
    PROMPTED_FRANCHISE_KEY,
    SNAPSHOT_ITEM_COUNT_KEY,
    SNAPSHOT_SOURCE_KEY,
    SNAPSHOT_TIMESTAMP_KEY,
    RecommendationsMemory,
    build_recommendations_memory_metadata,
    is_snapshot_fresh,
    resolve_memory_update_from_context,
    resolve_recommendation_continuation,
    resolve_recommendations_memory_from_history,
)

NOW = 1_700_000_000_000


def _memory(**overrides):
    values = {
        "last_franchise": "naruto",
        "last_type": "mangas",
        "prompted_franchise": "naruto",
        "snapshot_timestamp": NOW - 1000,
        "snapshot_source": "recommendations",
        "snapshot_item_count": 3,
    }
    values.update(overrides)
    return RecommendationsMemory(**values)


class TestMemoryFromHistory:
    def test_fields_come_from_newest_carrier(self):
        rows = [
            HistoryRow(sender="bot", content="...", metadata={PROMPTED_FRANCHISE_KEY: None}),
            HistoryRow(sender="user", content="dale"),
            HistoryRow(
                sender="bot",
                content="...",
                metadata={
                    PROMPTED_FRANCHISE_KEY: "naruto",
                    LAST_FRANCHISE_KEY: "naruto",
                    SNAPSHOT_TIMESTAMP_KEY: float(NOW),
                    SNAPSHOT_SOURCE_KEY: "recommendations",
                    SNAPSHOT_ITEM_COUNT_KEY: 4,
                },
            ),
        ]
        memory = resolve_recommendations_memory_from_history(rows)
        assert memory.prompted_franchise is None
        assert memory.last_franchise == "naruto"
        assert memory.snapshot_timestamp == NOW
        assert memory.snapshot_item_count == 4

    def test_freshness_window(self):
        memory = _memory(snapshot_timestamp=NOW)
        assert is_snapshot_fresh(memory, NOW + 300_000) is True
        assert is_snapshot_fresh(memory, NOW + 300_001) is False
        assert is_snapshot_fresh(memory, NOW - 1) is False
        assert is_snapshot_fresh(_memory(snapshot_timestamp=None), NOW) is False


class TestContinuation:
    def test_short_ack_rewrites_prompted_franchise(self):
        result = resolve_recommendation_continuation("dale", [], "general", _memory(), NOW)
        assert result.rewritten is True
        assert result.rewritten_text == "quiero ver productos de naruto"
        assert result.entities == ["naruto"]
        assert result.force_recommendations_intent is True

    def test_stale_snapshot_keeps_text(self):
        result = resolve_recommendation_continuation(
            "dale", [], "general", _memory(snapshot_timestamp=NOW - 300_001), NOW
        )
        assert result.rewritten is False
        assert result.rewritten_text == "dale"
        assert result.force_recommendations_intent is False

    def test_unprompted_memory_keeps_text(self):
        result = resolve_recommendation_continuation("dale", [], "general", _memory(prompted_franchise=None), NOW)
        assert result.rewritten is False

    def test_continuation_phrase_uses_last_franchise(self):
        memory = _memory(last_franchise="one_piece")
        result = resolve_recommendation_continuation("algo mas barato", [], "general", memory, NOW)
        assert result.rewritten_text == "algo mas barato de one piece"

    def test_explicit_franchise_wins(self):
        result = resolve_recommendation_continuation("dale, pero de bleach", [], "general", _memory(), NOW)
        assert result.rewritten is False
        assert result.force_recommendations_intent is True

    def test_orders_intent_not_forced(self):
        result = resolve_recommendation_continuation("donde esta mi pedido", [], "orders", _memory(), NOW)
        assert result.force_recommendations_intent is False


class TestMemoryUpdate:
    def test_from_recommendations_block(self):
        blocks = [
            {
                "contextType": "recommendations",
                "contextPayload": {
                    "products": [{"id": 1}, {"id": 2}],
                    "matchedFranchises": ["naruto"],
                    "preferences": {"type": ["mangas"]},
                },
            }
        ]
        update = resolve_memory_update_from_context(blocks, "recomendame naruto", [], NOW)
        assert update.last_franchise == "naruto"
        assert update.last_type == "mangas"
        assert update.snapshot_source == "recommendations"
        assert update.snapshot_item_count == 2
        assert update.snapshot_timestamp == NOW

    def test_from_products_block(self):
        blocks = [
            {
                "contextType": "products",
                "contextPayload": {"items": [{"id": 1}], "resolvedQuery": {"productName": "Naruto tomo 1"}},
            }
        ]
        update = resolve_memory_update_from_context(blocks, "tenes naruto?", [], NOW)
        assert update.last_franchise == "naruto"
        assert update.snapshot_source == "products"
        assert update.snapshot_item_count == 1

    def test_products_without_signals(self):
        blocks = [{"contextType": "products", "contextPayload": {"items": [{"id": 1}]}}]
        assert resolve_memory_update_from_context(blocks, "hola", [], NOW) is None

    def test_metadata(self):
        assert build_recommendations_memory_metadata(None) == {}
        assert build_recommendations_memory_metadata(None, "naruto") == {PROMPTED_FRANCHISE_KEY: "naruto"}
