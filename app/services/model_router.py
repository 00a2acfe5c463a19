import re
from dataclasses import dataclass

from app.config import settings

SIMPLE_INTENTS = frozenset({"orders", "payment_shipping", "store_info", "general"})
COMPLEX_INTENTS = frozenset({"recommendations", "tickets", "products"})
LONG_MESSAGE_THRESHOLD = 180

COMPLEX_SIGNAL_PATTERNS = (
    re.compile(r"recomend(?:ame|acion|aciones)"),
    re.compile(r"\bcompar(?:a|ar|ame)\b"),
    re.compile(r"\bproblema\b"),
    re.compile(r"\bconflicto\b"),
    re.compile(r"\bmejor\b"),
    re.compile(r"\bpeor\b"),
)


@dataclass(frozen=True)
class ModelRoutingDecision:
    selected_model: str
    reason: str  # complex_intent, complex_signal, long_message, multiturn, simple_default, default
    fallback_model: str


def route_model(
    intent: str,
    message_length: int,
    has_multi_turn_context: bool,
    contains_complex_signals: bool,
    primary_model: str | None = None,
    economy_model: str | None = None,
) -> ModelRoutingDecision:
    """Pick the model tier for a reply. Deterministic: same input, same model."""
    primary = primary_model or settings.llm_primary_model
    economy = economy_model or settings.llm_economy_model

    if intent in COMPLEX_INTENTS:
        return ModelRoutingDecision(primary, "complex_intent", primary)
    if contains_complex_signals:
        return ModelRoutingDecision(primary, "complex_signal", primary)
    if message_length > LONG_MESSAGE_THRESHOLD:
        return ModelRoutingDecision(primary, "long_message", primary)
    if has_multi_turn_context and intent != "general":
        return ModelRoutingDecision(primary, "multiturn", primary)
    if intent in SIMPLE_INTENTS:
        return ModelRoutingDecision(economy, "simple_default", primary)
    return ModelRoutingDecision(primary, "default", primary)


def detect_complex_signals(text: str) -> bool:
    normalized = (text or "").strip().lower()
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in COMPLEX_SIGNAL_PATTERNS)


def should_escalate_to_primary(confidence_label: str | None, requires_clarification: bool, intent: str) -> bool:
    """Re-ask the primary model when the economy reply is unsure of itself."""
    if confidence_label == "low":
        return True
    return requires_clarification and intent != "general"
