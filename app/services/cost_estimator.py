from typing import Dict, Optional

TOKENS_PER_MILLION = 1_000_000

# USD per 1M tokens
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4.1-mini": {"input": 0.4, "cached_input": 0.1, "output": 1.6},
    "gpt-4.1-nano": {"input": 0.1, "cached_input": 0.025, "output": 0.4},
    "gpt-4o-mini": {"input": 0.15, "cached_input": 0.075, "output": 0.6},
}


def _non_negative(value: Optional[float]) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        return 0.0
    return max(float(value), 0.0)


def estimate_cost_usd(
    model: str,
    input_tokens: Optional[int],
    output_tokens: Optional[int],
    cached_tokens: Optional[int],
) -> float:
    """Cost of one call. Cached tokens are billed at their own rate, not as input."""
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        return 0.0

    cached = _non_negative(cached_tokens)
    billable_input = max(_non_negative(input_tokens) - cached, 0.0)
    output = _non_negative(output_tokens)

    cost = (
        billable_input * pricing["input"]
        + cached * pricing["cached_input"]
        + output * pricing["output"]
    ) / TOKENS_PER_MILLION
    return round(cost, 6)
