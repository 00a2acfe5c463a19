"""Order lookup for guests who are not signed in.

The bot asks whether the guest has the order data, collects the order id
plus two identity factors, throttles through the rate limiter and calls the
signed order lookup backend. The state lives in bot turn metadata under
``ordersGuestFlowState``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from app.logging_config import get_logger
from app.services import metrics, responses
from app.services.errors import ExternalServiceError
from app.services.flows.history import HistoryRow
from app.services.flows.order_lookup_request import OrderLookupRequest, resolve_order_lookup_request
from app.services.flows.state_machine import FlowStateMachine
from app.services.responses import FlowReply
from app.services.text_normalize import contains_any_term, normalize_user_reply, word_count

logger = get_logger("guest_order_lookup")

FLOW_STATE_KEY = "ordersGuestFlowState"


class GuestOrderFlowState(str, Enum):
    AWAITING_HAS_DATA_ANSWER = "awaiting_has_data_answer"
    AWAITING_LOOKUP_PAYLOAD = "awaiting_lookup_payload"


_ANY = frozenset({None, GuestOrderFlowState.AWAITING_HAS_DATA_ANSWER, GuestOrderFlowState.AWAITING_LOOKUP_PAYLOAD})

guest_order_flow = FlowStateMachine(
    "guest_order_lookup",
    {
        None: _ANY,
        GuestOrderFlowState.AWAITING_HAS_DATA_ANSWER: _ANY,
        GuestOrderFlowState.AWAITING_LOOKUP_PAYLOAD: frozenset({None, GuestOrderFlowState.AWAITING_LOOKUP_PAYLOAD}),
    },
)

STRONG_YES_TERMS = ("si", "sii", "yes", "tengo", "los tengo", "cuento con", "dispongo", "claro", "de una")
WEAK_YES_TERMS = ("dale", "ok", "okey", "listo", "joya", "perfecto", "genial", "buenisimo", "buenisima")
STRONG_NO_TERMS = (
    "no", "noo", "nop", "negativo", "no tengo", "no cuento", "no dispongo",
    "todavia no", "aun no", "ni en pedo", "no estoy ni ahi", "ni ahi",
)
AMBIGUOUS_TERMS = ("no se", "nose", "quizas", "tal vez", "capaz", "puede ser", "puede que")
SHORT_ACK_TERMS = frozenset(
    {"si", "sii", "yes", "claro", "de una", "dale", "ok", "okey", "listo", "joya", "perfecto", "genial",
     "buenisimo", "buenisima"}
)
MAX_SHORT_ACK_WORDS = 3
CANCELLED_STATE_MARKER = "cancel"


@dataclass
class LookupTelemetry:
    attempted: bool = False
    result_code: Optional[str] = None  # success, not_found_or_mismatch, invalid_payload, unauthorized, throttled, exception
    status_code: Optional[int] = None

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "ordersGuestLookupAttempted": self.attempted,
            "ordersGuestLookupResultCode": self.result_code,
            "ordersGuestLookupStatusCode": self.status_code,
        }


@dataclass
class GuestOrderLookupOutcome:
    reply: FlowReply
    next_state: Optional[GuestOrderFlowState]
    telemetry: LookupTelemetry = field(default_factory=LookupTelemetry)
    offered_escalation: bool = False


def resolve_has_order_data_answer(text: str) -> str:
    """Classify a reply to "do you have your order data?" as yes, no or unknown."""
    normalized = normalize_user_reply(text)
    if not normalized:
        return "unknown"
    if contains_any_term(normalized, AMBIGUOUS_TERMS):
        return "unknown"
    if contains_any_term(normalized, STRONG_NO_TERMS):
        return "no"
    if contains_any_term(normalized, STRONG_YES_TERMS):
        return "yes"
    if contains_any_term(normalized, WEAK_YES_TERMS) and is_short_isolated_ack(text):
        return "yes"
    return "unknown"


def is_short_isolated_ack(text: str) -> bool:
    normalized = normalize_user_reply(text)
    if not normalized or word_count(normalized) > MAX_SHORT_ACK_WORDS:
        return False
    return normalized in SHORT_ACK_TERMS


def resolve_guest_order_flow_state_from_history(rows: Sequence[HistoryRow]) -> Optional[GuestOrderFlowState]:
    for row in rows:
        if row.sender != "bot" or not isinstance(row.metadata, dict):
            continue
        if FLOW_STATE_KEY in row.metadata:
            return guest_order_flow.parse(row.metadata[FLOW_STATE_KEY], GuestOrderFlowState)
    return None


def should_continue_guest_order_lookup_flow(
    state: Optional[GuestOrderFlowState],
    text: str,
    entities: Sequence[str],
    routed_intent: str,
) -> bool:
    if state is None:
        return False
    if routed_intent == "orders":
        return True
    if resolve_order_lookup_request(text, entities).has_signals:
        return True
    if resolve_has_order_data_answer(text) != "unknown":
        return True
    return is_short_isolated_ack(text)


def build_missing_data_reply(request: OrderLookupRequest) -> FlowReply:
    if request.order_id is None:
        return responses.order_lookup_missing_order_id()
    if request.invalid_factors:
        return responses.order_lookup_invalid_payload(request.invalid_factors)
    if request.provided_factors < 2:
        return responses.order_lookup_missing_identity_factors(request.provided_factors)
    return responses.order_lookup_invalid_payload()


def _outcome(
    current: Optional[GuestOrderFlowState],
    reply: FlowReply,
    next_state: Optional[GuestOrderFlowState],
    telemetry: Optional[LookupTelemetry] = None,
    offered_escalation: bool = False,
) -> GuestOrderLookupOutcome:
    return GuestOrderLookupOutcome(
        reply=reply,
        next_state=guest_order_flow.transition(current, next_state),
        telemetry=telemetry or LookupTelemetry(),
        offered_escalation=offered_escalation,
    )


def handle_guest_order_lookup_flow(
    *,
    request_id: str,
    user_id: str,
    text: str,
    entities: Sequence[str],
    current_state: Optional[GuestOrderFlowState],
    rate_limiter,
    lookup_client,
    client_ip: Optional[str] = None,
) -> GuestOrderLookupOutcome:
    request = resolve_order_lookup_request(text, entities)
    awaiting_payload = GuestOrderFlowState.AWAITING_LOOKUP_PAYLOAD

    if request.is_complete:
        decision = rate_limiter.consume(
            request_id=request_id,
            order_id=str(request.order_id),
            user_id=user_id,
            client_ip=client_ip,
        )
        if decision.degraded:
            metrics.increment_rate_limit_degraded()
        if not decision.allowed:
            metrics.increment_rate_limit_blocked(decision.blocked_by or "order")
            return _outcome(current_state, responses.order_lookup_throttled(), awaiting_payload)
        return _execute_lookup(request_id, request, current_state, lookup_client)

    if current_state is None:
        if request.has_signals:
            return _outcome(current_state, build_missing_data_reply(request), awaiting_payload)
        return _outcome(
            current_state,
            responses.order_lookup_has_data_question(),
            GuestOrderFlowState.AWAITING_HAS_DATA_ANSWER,
        )

    answer = resolve_has_order_data_answer(text)
    if answer == "no":
        metrics.increment_order_flow_signal("declined_data")
        return _outcome(current_state, responses.orders_requires_auth(), None)

    if current_state == GuestOrderFlowState.AWAITING_HAS_DATA_ANSWER:
        if answer == "yes":
            return _outcome(current_state, responses.order_lookup_provide_data(), awaiting_payload)
        if request.has_signals:
            return _outcome(current_state, build_missing_data_reply(request), awaiting_payload)
        metrics.increment_order_flow_signal("ambiguous_answer")
        return _outcome(
            current_state,
            responses.order_lookup_unknown_has_data_answer(),
            GuestOrderFlowState.AWAITING_HAS_DATA_ANSWER,
        )

    if answer == "yes" and not request.has_signals:
        return _outcome(current_state, responses.order_lookup_provide_data(), awaiting_payload)
    return _outcome(current_state, build_missing_data_reply(request), awaiting_payload)


def _execute_lookup(
    request_id: str,
    request: OrderLookupRequest,
    current_state: Optional[GuestOrderFlowState],
    lookup_client,
) -> GuestOrderLookupOutcome:
    awaiting_payload = GuestOrderFlowState.AWAITING_LOOKUP_PAYLOAD
    try:
        result = lookup_client.lookup_order(
            request_id=request_id,
            order_id=request.order_id,
            identity=request.identity,
        )
    except ExternalServiceError as exc:
        logger.warning(
            "Guest order lookup failed",
            extra={"context": {"request_id": request_id, "error_type": type(exc).__name__, "status_code": exc.status_code}},
        )
        metrics.increment_order_lookup_result("exception")
        return _outcome(
            current_state,
            FlowReply(ok=False, message=responses.GENERIC_ERROR_MESSAGE),
            awaiting_payload,
            LookupTelemetry(attempted=True, result_code="exception"),
        )

    metrics.increment_order_lookup_result(result.code)
    telemetry = LookupTelemetry(attempted=True, result_code=result.code, status_code=result.status_code)

    if result.ok:
        message = responses.order_lookup_success_message(result.order)
        cancelled = CANCELLED_STATE_MARKER in normalize_user_reply(str(result.order.get("state") or ""))
        if cancelled:
            message = f"{message}\n\n{responses.cancelled_order_escalation_offer()}"
        return _outcome(current_state, FlowReply(ok=True, message=message), None, telemetry, offered_escalation=cancelled)

    if result.code == "not_found_or_mismatch":
        metrics.increment_order_lookup_verification_failed()
        return _outcome(current_state, responses.order_lookup_verification_failed(), None, telemetry)
    if result.code == "invalid_payload":
        return _outcome(current_state, responses.order_lookup_invalid_payload(), awaiting_payload, telemetry)
    if result.code == "unauthorized":
        return _outcome(current_state, responses.order_lookup_unauthorized(), awaiting_payload, telemetry)
    if result.code == "throttled":
        metrics.increment_rate_limit_blocked("backend")
        return _outcome(current_state, responses.order_lookup_throttled(), awaiting_payload, telemetry)

    return _outcome(
        current_state,
        FlowReply(ok=False, message=responses.GENERIC_ERROR_MESSAGE),
        awaiting_payload,
        LookupTelemetry(attempted=True, result_code="exception"),
    )


def build_guest_order_flow_metadata(outcome: GuestOrderLookupOutcome) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        FLOW_STATE_KEY: outcome.next_state.value if outcome.next_state else None,
        **outcome.telemetry.to_metadata(),
    }
    return metadata
