"""Offer of support channels after a guest sees a cancelled order."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from app.services import responses
from app.services.flows.history import HistoryRow
from app.services.flows.state_machine import FlowStateMachine
from app.services.responses import FlowReply
from app.services.text_normalize import contains_any_term, normalize_user_reply, word_count

FLOW_STATE_KEY = "ordersEscalationFlowState"
OFFERED_ESCALATION_KEY = "offeredEscalation"


class OrdersEscalationFlowState(str, Enum):
    AWAITING_CANCELLED_REASON_CONFIRMATION = "awaiting_cancelled_reason_confirmation"


_AWAITING = OrdersEscalationFlowState.AWAITING_CANCELLED_REASON_CONFIRMATION

orders_escalation_flow = FlowStateMachine(
    "orders_escalation",
    {
        None: frozenset({None, _AWAITING}),
        _AWAITING: frozenset({None, _AWAITING}),
    },
)

STRONG_YES_TERMS = ("si", "sii", "yes", "de una", "obvio", "claro")
WEAK_YES_TERMS = ("dale", "ok", "okey", "listo", "joya", "perfecto", "por favor", "porfa", "si por favor", "si porfa")
STRONG_NO_TERMS = ("no", "noo", "nop", "no gracias", "no hace falta", "dejalo asi", "dejalo", "prefiero no")
MAX_SHORT_ACK_WORDS = 4
REVIEW_REQUEST_STEMS = ("consult", "escal", "deriv", "revis")
REVIEW_REQUEST_INTENTS = frozenset({"orders", "tickets", "general"})

CANCELLED_PATTERN = re.compile(r"\bcancelad[oa]\b", re.I)
ORDER_ID_PATTERN = re.compile(r"\bpedido\s*#?\s*(\d{4,12})\b", re.I)


@dataclass
class OrdersEscalationOutcome:
    reply: FlowReply
    next_state: Optional[OrdersEscalationFlowState]


def resolve_cancelled_order_escalation_answer(text: str) -> str:
    normalized = normalize_user_reply(text)
    if not normalized:
        return "unknown"
    if contains_any_term(normalized, STRONG_NO_TERMS):
        return "no"
    if contains_any_term(normalized, STRONG_YES_TERMS):
        return "yes"
    if contains_any_term(normalized, WEAK_YES_TERMS) and word_count(normalized) <= MAX_SHORT_ACK_WORDS:
        return "yes"
    return "unknown"


def resolve_orders_escalation_flow_state_from_history(
    rows: Sequence[HistoryRow],
) -> Optional[OrdersEscalationFlowState]:
    for row in rows:
        if row.sender != "bot" or not isinstance(row.metadata, dict):
            continue
        if FLOW_STATE_KEY in row.metadata:
            return orders_escalation_flow.parse(row.metadata[FLOW_STATE_KEY], OrdersEscalationFlowState)
    return None


def resolve_recent_cancelled_order_id(rows: Sequence[HistoryRow]) -> Optional[str]:
    """Order id from the newest bot message that mentions a cancelled order."""
    for row in rows:
        if row.sender != "bot" or not isinstance(row.content, str):
            continue
        if not CANCELLED_PATTERN.search(row.content):
            continue
        match = ORDER_ID_PATTERN.search(row.content)
        if match:
            return match.group(1)
    return None


def contains_review_request(text: str) -> bool:
    normalized = normalize_user_reply(text)
    return any(stem in normalized for stem in REVIEW_REQUEST_STEMS)


def should_continue_orders_escalation_flow(
    state: Optional[OrdersEscalationFlowState],
    text: str,
    routed_intent: str,
) -> bool:
    if state is None:
        return False
    if resolve_cancelled_order_escalation_answer(text) != "unknown":
        return True
    if routed_intent not in REVIEW_REQUEST_INTENTS:
        return False
    return contains_review_request(text)


def handle_pending_orders_escalation_flow(
    text: str,
    rows: Sequence[HistoryRow],
    current_state: Optional[OrdersEscalationFlowState] = _AWAITING,
) -> OrdersEscalationOutcome:
    answer = resolve_cancelled_order_escalation_answer(text)

    if answer == "yes":
        order_id = resolve_recent_cancelled_order_id(rows)
        return OrdersEscalationOutcome(
            reply=responses.cancelled_order_escalation_action(order_id),
            next_state=orders_escalation_flow.transition(current_state, None),
        )
    if answer == "no":
        return OrdersEscalationOutcome(
            reply=responses.cancelled_order_escalation_declined(),
            next_state=orders_escalation_flow.transition(current_state, None),
        )
    return OrdersEscalationOutcome(
        reply=responses.cancelled_order_escalation_unknown_answer(),
        next_state=orders_escalation_flow.transition(current_state, _AWAITING),
    )


def build_orders_escalation_metadata(
    next_state: Optional[OrdersEscalationFlowState], offered: bool = False
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {FLOW_STATE_KEY: next_state.value if next_state else None}
    if offered:
        metadata[OFFERED_ESCALATION_KEY] = True
    return metadata
