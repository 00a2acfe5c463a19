"""One chat turn, from the validated request to the persisted reply.

Deterministic flows run first and in a fixed priority: guest order lookup,
then a pending recommendations disambiguation, then a pending cancelled-order
escalation. Whatever is left goes through price comparison, the
recommendations continuation rewrite, context enrichment and the LLM.
Flow state never lives in memory: it is read from the latest bot turn
metadata and written back on the new bot turn.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import LoggerAdapter, get_logger, truncate_for_log
from app.schemas.chat import ChatRequest, ChatResponse
from app.services import metrics
from app.services.catalog_client import CatalogClient, get_catalog_client
from app.services.chat_persistence import (
    TurnRecord,
    get_conversation_history,
    get_last_bot_message_by_external_event,
    persist_turn,
    to_llm_history,
    write_audit,
)
from app.services.context_service import enrich_context
from app.services.errors import ContractError
from app.services.flows.guest_order_lookup import (
    FLOW_STATE_KEY as GUEST_FLOW_STATE_KEY,
    build_guest_order_flow_metadata,
    handle_guest_order_lookup_flow,
    resolve_guest_order_flow_state_from_history,
    should_continue_guest_order_lookup_flow,
)
from app.services.flows.history import HistoryRow
from app.services.flows.order_lookup_request import resolve_order_lookup_request
from app.services.flows.orders_escalation import (
    OrdersEscalationFlowState,
    build_orders_escalation_metadata,
    handle_pending_orders_escalation_flow,
    resolve_orders_escalation_flow_state_from_history,
    should_continue_orders_escalation_flow,
)
from app.services.flows.recommendations_flow import (
    RecommendationsFlowSnapshot,
    build_disambiguation_reply,
    build_recommendations_flow_metadata,
    handle_pending_recommendations_flow,
    resolve_recommendations_flow_from_history,
    should_continue_recommendations_flow,
    snapshot_from_disambiguation,
)
from app.services.flows.recommendations_memory import (
    PROMPTED_FRANCHISE_KEY,
    MemoryUpdate,
    build_recommendations_memory_metadata,
    now_ms,
    resolve_recommendation_continuation,
    resolve_recommendations_memory_from_history,
)
from app.services.flows.turn_metadata import PipelineTelemetry, build_turn_metadata
from app.services.idempotency_service import mark_failed, mark_processed, start_processing
from app.services.intent_service import classify_intent
from app.services.llm.base import LLMProvider
from app.services.llm_service import AssistantReply, build_assistant_reply, get_llm_provider
from app.services.order_lookup_client import get_order_lookup_client
from app.services.orders_client import OrdersClient, get_orders_client
from app.services.output_safety import sanitize_output, sanitize_user_text
from app.services.price_comparison import (
    missing_snapshot_message,
    price_comparison_message,
    requery_text,
    resolve_latest_catalog_snapshot,
    resolve_price_comparison_request,
    select_price_comparison_item,
)
from app.services.rate_limiter import get_rate_limiter
from app.services.responses import (
    CATALOG_UNAVAILABLE_MESSAGE,
    DUPLICATE_EVENT_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    ORDERS_UNAVAILABLE_MESSAGE,
    FlowReply,
    cancelled_order_escalation_offer,
    order_lookup_success_message,
    orders_requires_auth,
)

logger = get_logger("orchestrator")

VALID_SOURCES = frozenset({"web", "whatsapp"})
GUEST_USER_PREFIX = "guest:"
DETERMINISTIC_LLM_PATH = "fallback_default"
ERROR_INTENT = "error"

GUIDED_RETRY_HINT = (
    "Reintento guiado: evita respuesta generica. Responde accionable y especifico "
    "al pedido actual, sin reiniciar el flujo."
)


@dataclass
class OrchestratorDeps:
    """External collaborators of a turn. Tests swap any of them."""

    rate_limiter: Any
    lookup_client: Any
    catalog: CatalogClient
    llm_provider: Optional[LLMProvider] = None
    orders: Optional[OrdersClient] = None
    clock_ms: Callable[[], int] = now_ms
    sleep: Callable[[float], None] = time.sleep


def build_default_deps() -> OrchestratorDeps:
    return OrchestratorDeps(
        rate_limiter=get_rate_limiter(),
        lookup_client=get_order_lookup_client(),
        catalog=get_catalog_client(),
        llm_provider=get_llm_provider(),
        orders=get_orders_client(),
    )


@dataclass
class TurnState:
    """Mutable state threaded through the branches of one turn."""

    text: str
    entities: List[str]
    routed_intent: str
    effective_intent: str
    telemetry: PipelineTelemetry = field(default_factory=PipelineTelemetry)
    reply: Optional[FlowReply] = None
    rewritten: bool = False
    context_blocks: List[Dict[str, Any]] = field(default_factory=list)
    llm_metadata: Dict[str, Any] = field(default_factory=dict)
    flow_metadata: Dict[str, Any] = field(default_factory=dict)
    catalog_snapshot: List[Dict[str, Any]] = field(default_factory=list)
    memory_update: Optional[MemoryUpdate] = None
    prompted_franchise: Optional[str] = None


def validate_chat_request(request: ChatRequest) -> str:
    """Return the sanitized text, or raise ContractError."""
    if request.source not in VALID_SOURCES:
        raise ContractError("Invalid source: must be one of web, whatsapp")
    if not isinstance(request.conversationId, str) or not request.conversationId.strip():
        raise ContractError("Invalid conversationId: must be a non-empty string")
    if not isinstance(request.text, str):
        raise ContractError("Invalid text: must be a string")

    text = sanitize_user_text(request.text)
    if not text:
        raise ContractError("Invalid text: must be a non-empty string")
    if len(text) > settings.chat_max_text_length:
        raise ContractError(f"Invalid text: exceeds {settings.chat_max_text_length} characters")
    return text


def resolve_user_external_id(request: ChatRequest) -> str:
    user_id = (request.userId or "").strip()
    if user_id:
        return user_id
    return f"{GUEST_USER_PREFIX}{request.conversationId.strip()}"


def _idempotency_payload(request: ChatRequest) -> Dict[str, Any]:
    # The access token never reaches the events table.
    return request.model_dump(exclude={"accessToken"}, exclude_none=True)


def _failure_response(message: str = GENERIC_ERROR_MESSAGE) -> ChatResponse:
    return ChatResponse(ok=False, message=message)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def handle_duplicate_event(
    db: Session,
    *,
    request: ChatRequest,
    request_id: str,
    external_event_id: str,
    user_external_id: str,
    started: float,
) -> ChatResponse:
    previous = get_last_bot_message_by_external_event(db, request.source, external_event_id)
    message = previous.content if previous is not None else DUPLICATE_EVENT_MESSAGE
    response = ChatResponse(
        ok=True,
        message=message,
        conversationId=request.conversationId,
        responseId=str(previous.id) if previous is not None else None,
    )
    metrics.increment_duplicate(request.source)
    write_audit(
        db,
        request_id=request_id,
        user_id=user_external_id,
        conversation_id=request.conversationId,
        source=request.source,
        intent="duplicate",
        status="duplicate",
        message=message,
        latency_ms=_elapsed_ms(started),
        metadata={"externalEventId": external_event_id},
    )
    return response


def _run_guest_order_flow(
    state: TurnState,
    *,
    request_id: str,
    user_external_id: str,
    client_ip: Optional[str],
    current_state,
    deps: OrchestratorDeps,
) -> bool:
    outcome = handle_guest_order_lookup_flow(
        request_id=request_id,
        user_id=user_external_id,
        text=state.text,
        entities=state.entities,
        current_state=current_state,
        rate_limiter=deps.rate_limiter,
        lookup_client=deps.lookup_client,
        client_ip=client_ip,
    )
    if outcome.telemetry.attempted:
        state.telemetry.tool_attempts += 1
    state.reply = outcome.reply
    state.effective_intent = "orders"
    state.flow_metadata.update(build_guest_order_flow_metadata(outcome))
    return outcome.offered_escalation


def _run_pending_recommendations_flow(state: TurnState, snapshot: RecommendationsFlowSnapshot) -> RecommendationsFlowSnapshot:
    outcome = handle_pending_recommendations_flow(snapshot, state.text, state.entities)
    if outcome.reply is not None:
        state.reply = outcome.reply
        state.effective_intent = "recommendations"
        state.prompted_franchise = outcome.next.franchise
        return outcome.next

    if outcome.resolved:
        metrics.increment_recommendations_disambiguation("resolved")
        state.text = outcome.rewritten_text
        state.entities = list(outcome.entities)
        state.effective_intent = "recommendations"
        state.rewritten = True
    return outcome.next


def _run_price_comparison(state: TurnState, original_text: str, history_rows: List[HistoryRow], memory) -> None:
    request_kind = resolve_price_comparison_request(original_text)
    if request_kind is None:
        return

    snapshot = resolve_latest_catalog_snapshot(history_rows)
    if snapshot:
        item = select_price_comparison_item(request_kind, snapshot)
        state.reply = FlowReply(ok=True, message=price_comparison_message(request_kind, item, len(snapshot)))
        state.effective_intent = "products"
        return

    if memory.last_franchise:
        state.text = requery_text(memory.last_franchise)
        state.effective_intent = "recommendations"
        state.rewritten = True
        state.telemetry.add_fallback("price_comparison_snapshot_missing_requery")
        return

    state.reply = FlowReply(ok=True, message=missing_snapshot_message())
    state.effective_intent = "products"
    state.telemetry.add_fallback("price_comparison_snapshot_missing_clarify")


def _should_retry_with_guidance(reply: AssistantReply) -> bool:
    llm_path = reply.metadata.get("llmPath")
    if isinstance(llm_path, str) and llm_path.startswith("fallback_"):
        return True
    fallback_reason = reply.metadata.get("fallbackReason")
    if isinstance(fallback_reason, str) and fallback_reason:
        return True
    return not (reply.message or "").strip()


def build_reply_with_guided_retry(
    state: TurnState,
    *,
    history: List[Dict[str, Any]],
    request_id: str,
    deps: OrchestratorDeps,
) -> AssistantReply:
    def ask(context_blocks: List[Dict[str, Any]]) -> AssistantReply:
        state.telemetry.llm_attempts += 1
        return build_assistant_reply(
            intent=state.effective_intent,
            user_text=state.text,
            history=history,
            context_blocks=context_blocks,
            request_id=request_id,
            provider=deps.llm_provider,
            sleep=deps.sleep,
        )

    first = ask(state.context_blocks)
    if not _should_retry_with_guidance(first):
        return first

    guided_blocks = [
        *state.context_blocks,
        {"contextType": "instruction_hint", "contextPayload": {"aiContext": GUIDED_RETRY_HINT}},
    ]
    metrics.increment_llm_guided_retry()
    state.telemetry.add_fallback("llm_guided_retry")
    return ask(guided_blocks)


def _audit_status(response: ChatResponse) -> str:
    if response.ok:
        return "success"
    return "requires_auth" if response.requiresAuth else "failure"


def handle_incoming_message(
    db: Session,
    request: ChatRequest,
    *,
    request_id: str,
    external_event_id: str,
    client_ip: Optional[str] = None,
    deps: Optional[OrchestratorDeps] = None,
) -> ChatResponse:
    """Process one inbound chat message.

    Raises ContractError for a malformed payload. Every later failure is
    audited and answered with a generic message.
    """
    started = time.monotonic()
    text = validate_chat_request(request)
    conversation_id = request.conversationId.strip()
    source = request.source
    user_external_id = resolve_user_external_id(request)
    log = LoggerAdapter(logger, {"request_id": request_id, "conversation_id": conversation_id})

    # 1. Idempotency
    try:
        idempotency = start_processing(
            db,
            source=source,
            external_event_id=external_event_id,
            payload=_idempotency_payload(request),
            request_id=request_id,
        )
    except Exception as exc:
        db.rollback()
        log.error(f"Idempotency store unavailable: {exc}", context={"external_event_id": external_event_id})
        return _failure_response()

    if idempotency.is_duplicate:
        return handle_duplicate_event(
            db,
            request=request,
            request_id=request_id,
            external_event_id=external_event_id,
            user_external_id=user_external_id,
            started=started,
        )

    deps = deps or build_default_deps()
    try:
        return _process_turn(
            db,
            request=request,
            text=text,
            conversation_id=conversation_id,
            user_external_id=user_external_id,
            request_id=request_id,
            external_event_id=external_event_id,
            client_ip=client_ip,
            deps=deps,
            started=started,
            log=log,
        )
    except Exception as exc:
        return _finalize_failure(
            db,
            exc,
            request=request,
            conversation_id=conversation_id,
            user_external_id=user_external_id,
            request_id=request_id,
            external_event_id=external_event_id,
            started=started,
            log=log,
        )


def _process_turn(
    db: Session,
    *,
    request: ChatRequest,
    text: str,
    conversation_id: str,
    user_external_id: str,
    request_id: str,
    external_event_id: str,
    client_ip: Optional[str],
    deps: OrchestratorDeps,
    started: float,
    log: LoggerAdapter,
) -> ChatResponse:
    auth_present = bool((request.accessToken or "").strip())
    current_ms = deps.clock_ms()

    # 2. History, intent and persisted flow state
    history_rows = get_conversation_history(db, conversation_id, limit=settings.history_limit)
    intent_result = classify_intent(text)
    state = TurnState(
        text=text,
        entities=list(intent_result.entities),
        routed_intent=intent_result.intent,
        effective_intent=intent_result.intent,
    )

    guest_state = resolve_guest_order_flow_state_from_history(history_rows)
    escalation_state = resolve_orders_escalation_flow_state_from_history(history_rows)
    recommendations_snapshot = resolve_recommendations_flow_from_history(history_rows)
    memory = resolve_recommendations_memory_from_history(history_rows)

    guest_continue = not auth_present and should_continue_guest_order_lookup_flow(
        guest_state, text, state.entities, state.routed_intent
    )
    is_guest_branch = not auth_present and (
        guest_continue
        or state.routed_intent == "orders"
        or resolve_order_lookup_request(text, state.entities).has_strong_signals
    )
    recommendations_continue = not is_guest_branch and should_continue_recommendations_flow(
        recommendations_snapshot.state, text, state.entities
    )
    escalation_continue = (
        not is_guest_branch
        and not recommendations_continue
        and should_continue_orders_escalation_flow(escalation_state, text, state.routed_intent)
    )

    log.info(
        "Turn routed",
        context={
            "routed_intent": state.routed_intent,
            "confidence": intent_result.confidence,
            "guest_branch": is_guest_branch,
            "recommendations_flow": recommendations_continue,
            "escalation_flow": escalation_continue,
            "text": truncate_for_log(text),
        },
    )

    # 3. Deterministic flows
    offered_escalation = False
    next_escalation_state: Optional[OrdersEscalationFlowState] = None
    next_recommendations = RecommendationsFlowSnapshot()

    if is_guest_branch:
        offered_escalation = _run_guest_order_flow(
            state,
            request_id=request_id,
            user_external_id=user_external_id,
            client_ip=client_ip,
            current_state=guest_state,
            deps=deps,
        )
    elif recommendations_continue:
        next_recommendations = _run_pending_recommendations_flow(state, recommendations_snapshot)
    elif escalation_continue:
        escalation = handle_pending_orders_escalation_flow(text, history_rows, escalation_state)
        state.reply = escalation.reply
        state.effective_intent = "orders"
        next_escalation_state = escalation.next_state

    if offered_escalation:
        next_escalation_state = OrdersEscalationFlowState.AWAITING_CANCELLED_REASON_CONFIRMATION

    # Pending states of flows that did not run this turn are cleared.
    if not is_guest_branch:
        state.flow_metadata[GUEST_FLOW_STATE_KEY] = None
        if guest_state is not None and state.routed_intent != "orders":
            metrics.increment_order_flow_signal("hijack_prevented")
    if escalation_state is not None and not escalation_continue and not offered_escalation:
        metrics.increment_order_flow_signal("hijack_prevented")

    # 4. Price comparison, continuation rewrite and enrichment
    if state.reply is None and not state.rewritten:
        _run_price_comparison(state, text, history_rows, memory)

    if state.reply is None:
        if not state.rewritten:
            continuation = resolve_recommendation_continuation(
                state.text,
                state.entities,
                state.effective_intent,
                memory,
                current_ms,
                settings.recommendations_snapshot_max_age_ms,
            )
            if continuation.force_recommendations_intent:
                state.effective_intent = "recommendations"
            if continuation.rewritten:
                state.text = continuation.rewritten_text
                state.entities = list(continuation.entities)

        enrichment = enrich_context(
            intent=state.effective_intent,
            text=state.text,
            entities=state.entities,
            catalog=deps.catalog,
            current_ms=current_ms,
            orders=deps.orders,
            access_token=request.accessToken,
            request_id=request_id,
        )
        state.telemetry.tool_attempts += enrichment.tool_attempts
        state.context_blocks = enrichment.context_blocks
        state.memory_update = enrichment.memory_update

        decision = enrichment.disambiguation
        if enrichment.requires_auth:
            state.reply = orders_requires_auth()
            log.info("Orders backend rejected the session token")
        elif enrichment.orders_unavailable:
            state.reply = FlowReply(ok=True, message=ORDERS_UNAVAILABLE_MESSAGE)
            state.telemetry.add_fallback("orders_unavailable")
            metrics.increment_fallback("orders_unavailable")
        elif enrichment.cancelled_order is not None:
            message = order_lookup_success_message(enrichment.cancelled_order)
            state.reply = FlowReply(ok=True, message=f"{message}\n\n{cancelled_order_escalation_offer()}")
            offered_escalation = True
            next_escalation_state = OrdersEscalationFlowState.AWAITING_CANCELLED_REASON_CONFIRMATION
        elif enrichment.catalog_unavailable:
            state.reply = FlowReply(ok=True, message=CATALOG_UNAVAILABLE_MESSAGE)
            state.telemetry.add_fallback("catalog_unavailable")
            metrics.increment_fallback("catalog_unavailable")
        elif decision is not None and decision.needs_disambiguation:
            state.reply = build_disambiguation_reply(decision)
            state.prompted_franchise = decision.franchise
            next_recommendations = snapshot_from_disambiguation(decision)
            metrics.increment_recommendations_disambiguation("triggered")
        else:
            state.catalog_snapshot = enrichment.catalog_snapshot
            state.prompted_franchise = enrichment.prompted_franchise

    if recommendations_snapshot.state is not None and not recommendations_continue and next_recommendations.state is None:
        metrics.increment_recommendations_disambiguation("abandoned")

    # 5. LLM reply
    if state.reply is None:
        assistant = build_reply_with_guided_retry(
            state, history=to_llm_history(history_rows), request_id=request_id, deps=deps
        )
        state.llm_metadata = assistant.metadata
        state.reply = FlowReply(ok=True, message=assistant.message)

    state.flow_metadata.update(build_recommendations_flow_metadata(next_recommendations))
    state.flow_metadata.update(build_orders_escalation_metadata(next_escalation_state, offered=offered_escalation))
    memory_metadata = build_recommendations_memory_metadata(state.memory_update, state.prompted_franchise)
    memory_metadata.setdefault(PROMPTED_FRANCHISE_KEY, state.prompted_franchise)
    state.flow_metadata.update(memory_metadata)

    return _finalize_success(
        db,
        state,
        request=request,
        text=text,
        conversation_id=conversation_id,
        user_external_id=user_external_id,
        request_id=request_id,
        external_event_id=external_event_id,
        auth_present=auth_present,
        confidence=intent_result.confidence,
        sentiment=intent_result.sentiment,
        entities_count=len(intent_result.entities),
        started=started,
        log=log,
    )


def _finalize_success(
    db: Session,
    state: TurnState,
    *,
    request: ChatRequest,
    text: str,
    conversation_id: str,
    user_external_id: str,
    request_id: str,
    external_event_id: str,
    auth_present: bool,
    confidence: float,
    sentiment: str,
    entities_count: int,
    started: float,
    log: LoggerAdapter,
) -> ChatResponse:
    reply = state.reply
    message = sanitize_output(reply.message)
    intent = state.effective_intent if reply.ok else ERROR_INTENT

    metadata = build_turn_metadata(
        request_id=request_id,
        external_event_id=external_event_id,
        routed_intent=state.routed_intent,
        effective_intent=state.effective_intent,
        confidence=confidence,
        entities_count=entities_count,
        sentiment=sentiment,
        auth_present=auth_present,
        requires_auth=reply.requires_auth,
        telemetry=state.telemetry,
        context_types=[block.get("contextType") for block in state.context_blocks],
        llm_metadata=state.llm_metadata,
        flow_metadata=state.flow_metadata,
        catalog_snapshot=state.catalog_snapshot,
    )

    persisted = persist_turn(
        db,
        TurnRecord(
            conversation_id=conversation_id,
            user_external_id=user_external_id,
            channel=request.source,
            external_event_id=external_event_id,
            user_text=text,
            bot_text=message,
            intent=intent,
            bot_metadata=metadata,
        ),
    )
    mark_processed(db, source=request.source, external_event_id=external_event_id)

    if reply.ok:
        response = ChatResponse(
            ok=True,
            message=message,
            conversationId=conversation_id,
            intent=state.effective_intent,
            responseId=str(persisted.bot_message_id) if persisted.bot_message_id else None,
        )
    else:
        response = ChatResponse(ok=False, message=message, requiresAuth=True if reply.requires_auth else None)

    latency_ms = _elapsed_ms(started)
    write_audit(
        db,
        request_id=request_id,
        user_id=user_external_id,
        conversation_id=conversation_id,
        source=request.source,
        intent=intent,
        status=_audit_status(response),
        message=message,
        latency_ms=latency_ms,
        metadata={**metadata, "externalEventId": external_event_id},
    )

    llm_path = state.llm_metadata.get("llmPath") or DETERMINISTIC_LLM_PATH
    metrics.increment_message(request.source, intent, llm_path)
    metrics.observe_response_latency(intent, latency_ms / 1000)
    log.info(
        "Turn completed",
        context={
            "intent": intent,
            "llm_path": llm_path,
            "latency_ms": latency_ms,
            "outbox_enqueued": persisted.outbox_enqueued,
            "fallbacks": state.telemetry.fallback_reasons,
        },
    )
    return response


def _finalize_failure(
    db: Session,
    exc: Exception,
    *,
    request: ChatRequest,
    conversation_id: str,
    user_external_id: str,
    request_id: str,
    external_event_id: str,
    started: float,
    log: LoggerAdapter,
) -> ChatResponse:
    log.error(f"Turn failed: {type(exc).__name__}: {exc}", exc_info=True)
    db.rollback()
    try:
        mark_failed(db, source=request.source, external_event_id=external_event_id, error_message=str(exc))
    except Exception as mark_exc:
        db.rollback()
        log.error(f"Could not mark event as failed: {mark_exc}")

    latency_ms = _elapsed_ms(started)
    write_audit(
        db,
        request_id=request_id,
        user_id=user_external_id,
        conversation_id=conversation_id,
        source=request.source,
        intent=ERROR_INTENT,
        status="failure",
        message=GENERIC_ERROR_MESSAGE,
        http_status=200,
        latency_ms=latency_ms,
        error_code=type(exc).__name__,
        metadata={"externalEventId": external_event_id},
    )
    metrics.increment_message(request.source, ERROR_INTENT, DETERMINISTIC_LLM_PATH)
    metrics.observe_response_latency(ERROR_INTENT, latency_ms / 1000)
    return _failure_response()
