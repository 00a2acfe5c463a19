import pytest

from app.services.cost_estimator import estimate_cost_usd


class TestEstimateCost:
    def test_cached_tokens_billed_at_cached_rate(self):
        cost = estimate_cost_usd("gpt-4.1-mini", 1000, 500, 200)
        assert cost == pytest.approx(0.00114)

    def test_unknown_model_costs_nothing(self):
        assert estimate_cost_usd("unknown-model", 1000, 1000, 0) == 0.0

    def test_missing_and_negative_counts_are_zero(self):
        assert estimate_cost_usd("gpt-4.1-nano", None, -5, None) == 0.0

    def test_cached_larger_than_input_does_not_go_negative(self):
        cost = estimate_cost_usd("gpt-4.1-nano", 100, 0, 400)
        assert cost == pytest.approx(400 * 0.025 / 1_000_000)
