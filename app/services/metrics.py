"""Prometheus metrics for the chat turn pipeline.

Every public helper swallows and logs its own failures: metrics are
fire-and-forget and never block or break the response path.
"""

from prometheus_client import Counter, Histogram

from app.logging_config import get_logger

logger = get_logger("metrics")

messages_total = Counter(
    "chat_turns_messages_total",
    "Processed chat turns",
    ["source", "intent", "llm_path"],
)

fallbacks_total = Counter(
    "chat_turns_fallbacks_total",
    "Turns answered through a fallback path",
    ["reason"],
)

response_latency = Histogram(
    "chat_turns_response_latency_seconds",
    "End-to-end turn latency",
    ["intent"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 4, 8, 16),
)

duplicates_total = Counter(
    "chat_turns_duplicate_events_total",
    "Inbound events detected as duplicates",
    ["source"],
)

rate_limit_blocked_total = Counter(
    "chat_turns_order_lookup_rate_limited_total",
    "Order lookups blocked by the rate limiter",
    ["dimension"],
)

rate_limit_degraded_total = Counter(
    "chat_turns_order_lookup_rate_limiter_degraded_total",
    "Order lookups allowed while the rate limiter store was unavailable",
)

order_lookup_results_total = Counter(
    "chat_turns_order_lookup_results_total",
    "Guest order lookup outcomes",
    ["result"],
)

order_lookup_verification_failed_total = Counter(
    "chat_turns_order_lookup_verification_failed_total",
    "Guest order lookups whose order id and identity did not match",
)

llm_guided_retries_total = Counter(
    "chat_turns_llm_guided_retries_total",
    "LLM calls re-issued with guidance after a fallback reply",
)

llm_tokens_total = Counter(
    "chat_turns_llm_tokens_total",
    "LLM tokens reported by the provider",
    ["model", "kind"],
)

llm_cost_usd_total = Counter(
    "chat_turns_llm_cost_usd_total",
    "Estimated LLM spend in USD",
    ["model"],
)

recommendations_disambiguation_total = Counter(
    "chat_turns_recommendations_disambiguation_total",
    "Recommendation disambiguation prompts and resolutions",
    ["stage"],
)

order_flow_signals_total = Counter(
    "chat_turns_order_flow_signals_total",
    "Guest order flow guard events",
    ["signal"],
)


def _safe(fn, *args, **kwargs) -> None:
    try:
        fn(*args, **kwargs)
    except Exception as exc:
        logger.warning(f"Metric update failed: {exc}")


def increment_message(source: str, intent: str, llm_path: str) -> None:
    _safe(lambda: messages_total.labels(source=source, intent=intent, llm_path=llm_path).inc())


def increment_fallback(reason: str) -> None:
    _safe(lambda: fallbacks_total.labels(reason=reason).inc())


def observe_response_latency(intent: str, seconds: float) -> None:
    _safe(lambda: response_latency.labels(intent=intent).observe(max(seconds, 0.0)))


def increment_duplicate(source: str) -> None:
    _safe(lambda: duplicates_total.labels(source=source).inc())


def increment_rate_limit_blocked(dimension: str) -> None:
    _safe(lambda: rate_limit_blocked_total.labels(dimension=dimension).inc())


def increment_rate_limit_degraded() -> None:
    _safe(rate_limit_degraded_total.inc)


def increment_order_lookup_result(result: str) -> None:
    _safe(lambda: order_lookup_results_total.labels(result=result).inc())


def increment_order_lookup_verification_failed() -> None:
    _safe(order_lookup_verification_failed_total.inc)


def increment_llm_guided_retry() -> None:
    _safe(llm_guided_retries_total.inc)


def record_llm_usage(model: str, input_tokens: int, output_tokens: int, cached_tokens: int, cost_usd: float) -> None:
    def _record() -> None:
        llm_tokens_total.labels(model=model, kind="input").inc(max(input_tokens, 0))
        llm_tokens_total.labels(model=model, kind="output").inc(max(output_tokens, 0))
        llm_tokens_total.labels(model=model, kind="cached").inc(max(cached_tokens, 0))
        llm_cost_usd_total.labels(model=model).inc(max(cost_usd, 0.0))

    _safe(_record)


def increment_recommendations_disambiguation(stage: str) -> None:
    _safe(lambda: recommendations_disambiguation_total.labels(stage=stage).inc())


def increment_order_flow_signal(signal: str) -> None:
    _safe(lambda: order_flow_signals_total.labels(signal=signal).inc())
