"""Assistant reply generation: structured LLM call, escalation, fallbacks."""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.config import settings
from app.logging_config import get_logger
from app.services import metrics
from app.services.cost_estimator import estimate_cost_usd
from app.services.errors import ExternalServiceError, RetryableError
from app.services.llm import LLMProvider, OpenAIProvider, StructuredLLMResponse
from app.services.model_router import (
    ModelRoutingDecision,
    detect_complex_signals,
    route_model,
    should_escalate_to_primary,
)
from app.services.result import Result
from app.services.retry import RetryPolicy, call_with_retry, exponential_backoff_with_jitter

logger = get_logger("llm_service")

SCHEMA_VERSION = "1.0"
SCHEMA_NAME = "assistant_reply"
MAX_REPLY_CHARS = 1200
MAX_CLARIFYING_QUESTION_CHARS = 300
MAX_PROMPT_HISTORY = 6

SYSTEM_PROMPT = (
    "Sos el asistente de Entelequia. Responde en espanol rioplatense, claro y breve. "
    "Usa solo la informacion del contexto; si falta un dato, pedilo."
)

ASSISTANT_SCHEMA: Dict[str, Any] = {
    "title": SCHEMA_NAME,
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "reply": {"type": "string", "minLength": 1, "maxLength": MAX_REPLY_CHARS},
        "requires_clarification": {"type": "boolean"},
        "clarifying_question": {"type": ["string", "null"], "maxLength": MAX_CLARIFYING_QUESTION_CHARS},
        "confidence_label": {"type": "string", "enum": ["high", "medium", "low"]},
        "_schema_version": {"type": "string", "const": SCHEMA_VERSION},
    },
    "required": [
        "reply",
        "requires_clarification",
        "clarifying_question",
        "confidence_label",
        "_schema_version",
    ],
}

LLM_PATH_PRIMARY = "structured_primary"
LLM_PATH_ESCALATED = "structured_escalated"
LLM_PATH_NO_API_KEY = "fallback_no_api_key"
LLM_PATH_EXHAUSTED = "fallback_exhausted"

DEFAULT_FALLBACK = "Perfecto, te ayudo con eso. Contame un poco mas para darte una respuesta precisa."

INTENT_FALLBACKS = {
    "orders": "Puedo ayudarte con el estado de tu pedido. Si queres, compartime el numero de pedido.",
    "payment_shipping": "Te comparto la guia de pagos y envios para que sigas con tu compra.",
    "tickets": "Siento el inconveniente. Contame el problema y te ayudo a escalarlo con soporte.",
    "recommendations": "Te recomiendo estos productos destacados en este momento.",
    "products": "Encontre resultados relacionados. Si queres, te detallo los mas relevantes.",
}

# Intents whose context block may carry a ready-made answer for the fallback.
FALLBACK_CONTEXT_TYPES = {
    "payment_shipping": "payment_info",
    "recommendations": "recommendations",
    "products": "products",
}


class AssistantReplySchema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    reply: str = Field(min_length=1, max_length=MAX_REPLY_CHARS)
    requires_clarification: bool
    clarifying_question: Optional[str] = Field(default=None, max_length=MAX_CLARIFYING_QUESTION_CHARS)
    confidence_label: Literal["high", "medium", "low"]
    schema_version: Literal["1.0"] = Field(alias="_schema_version")


@dataclass
class AssistantReply:
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


_llm_provider: Optional[LLMProvider] = None


def get_llm_provider() -> Optional[LLMProvider]:
    """Shared provider, or None when no API key is configured."""
    global _llm_provider
    if not settings.openai_api_key:
        return None
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
    return _llm_provider


def parse_structured_reply(raw_text: str) -> Result[AssistantReplySchema]:
    if not raw_text or not raw_text.strip():
        return Result.failure("empty structured output", "empty_output")
    try:
        data = json.loads(raw_text)
    except ValueError:
        return Result.failure("structured output is not JSON", "invalid_json")
    try:
        return Result.success(AssistantReplySchema.model_validate(data))
    except ValidationError as exc:
        return Result.failure(f"schema validation failed: {exc.error_count()} errors", "schema_mismatch")


def _find_block(context_blocks: Sequence[Dict[str, Any]], context_type: str) -> Optional[Dict[str, Any]]:
    for block in context_blocks:
        if isinstance(block, dict) and block.get("contextType") == context_type:
            return block
    return None


def build_fallback_response(intent: str, context_blocks: Sequence[Dict[str, Any]] = ()) -> str:
    """Deterministic reply for when the model can't be used."""
    context_type = FALLBACK_CONTEXT_TYPES.get(intent)
    block = _find_block(context_blocks, context_type) if context_type else None
    if block is not None:
        payload = block.get("contextPayload") if isinstance(block.get("contextPayload"), dict) else {}
        if context_type == "products":
            hint = payload.get("availabilityHint") or payload.get("summary")
        else:
            hint = payload.get("aiContext")
        if isinstance(hint, str) and hint.strip():
            return hint.strip()
    return INTENT_FALLBACKS.get(intent, DEFAULT_FALLBACK)


def build_prompt_messages(
    *,
    intent: str,
    user_text: str,
    history: Sequence[Dict[str, Any]],
    context_blocks: Sequence[Dict[str, Any]],
) -> List[dict]:
    recent = list(history)[-MAX_PROMPT_HISTORY:]
    history_lines = [f"- {item.get('sender', 'user')}: {item.get('content', '')}" for item in recent]
    user_prompt = "\n".join(
        [
            f"Intent detectado: {intent}",
            f"Mensaje del usuario: {user_text}",
            "Historial reciente:",
            "\n".join(history_lines) if history_lines else "- (sin historial)",
            "Contexto:",
            json.dumps(list(context_blocks), ensure_ascii=False, default=str),
        ]
    )
    return [
        {"role": "system", "content": [{"type": "input_text", "text": SYSTEM_PROMPT}]},
        {"role": "user", "content": [{"type": "input_text", "text": user_prompt}]},
    ]


def _compose_message(parsed: AssistantReplySchema) -> str:
    message = parsed.reply.strip()
    question = (parsed.clarifying_question or "").strip()
    if parsed.requires_clarification and question and question not in message:
        message = f"{message}\n\n{question}"
    return message


def _call_model(
    provider: LLMProvider,
    *,
    model: str,
    messages: List[dict],
    request_id: str,
    sleep: Callable[[float], None],
) -> tuple[AssistantReplySchema, StructuredLLMResponse]:
    def attempt() -> tuple[AssistantReplySchema, StructuredLLMResponse]:
        response = provider.generate_structured(
            messages=messages,
            model=model,
            schema=ASSISTANT_SCHEMA,
            max_tokens=settings.llm_max_output_tokens,
            timeout_seconds=settings.openai_timeout_seconds,
            idempotency_key=f"{request_id}:{model}",
        )
        parsed = parse_structured_reply(response.content)
        if not parsed.ok:
            raise RetryableError("openai", parsed.error or "invalid structured output")
        return parsed.value, response

    policy = RetryPolicy(
        max_attempts=settings.llm_max_attempts,
        backoff_fn=exponential_backoff_with_jitter(settings.llm_base_backoff_ms),
    )
    return call_with_retry(
        attempt,
        policy,
        sleep=sleep,
        on_retry=lambda n, exc: logger.warning(
            f"LLM attempt {n} failed, retrying",
            extra={"context": {"request_id": request_id, "model": model, "error": str(exc)}},
        ),
    )


def _usage_metadata(response: StructuredLLMResponse) -> Dict[str, Any]:
    usage = response.usage
    cost = estimate_cost_usd(response.model, usage.input_tokens, usage.output_tokens, usage.cached_tokens)
    metrics.record_llm_usage(response.model, usage.input_tokens, usage.output_tokens, usage.cached_tokens, cost)
    return {
        "inputTokens": usage.input_tokens,
        "outputTokens": usage.output_tokens,
        "cachedTokens": usage.cached_tokens,
        "costUsd": cost,
    }


def _fallback(intent: str, context_blocks, routing: Optional[ModelRoutingDecision], path: str, reason: str) -> AssistantReply:
    metrics.increment_fallback(reason)
    return AssistantReply(
        message=build_fallback_response(intent, context_blocks),
        metadata={
            "llmPath": path,
            "fallbackReason": reason,
            "model": routing.selected_model if routing else None,
            "routingReason": routing.reason if routing else None,
        },
    )


def build_assistant_reply(
    *,
    intent: str,
    user_text: str,
    history: Sequence[Dict[str, Any]],
    context_blocks: Sequence[Dict[str, Any]],
    request_id: str,
    provider: Optional[LLMProvider] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AssistantReply:
    """Ask the routed model for a structured reply.

    An economy-tier answer that is unsure of itself is re-asked on the primary
    model. Without an API key, or once retries are spent, the reply comes from
    the per-intent fallback table and the metadata records why.
    """
    provider = provider if provider is not None else get_llm_provider()
    routing = route_model(
        intent=intent,
        message_length=len(user_text or ""),
        has_multi_turn_context=len(history) > 1,
        contains_complex_signals=detect_complex_signals(user_text),
    )

    if provider is None:
        return _fallback(intent, context_blocks, routing, LLM_PATH_NO_API_KEY, "no_api_key")

    messages = build_prompt_messages(
        intent=intent, user_text=user_text, history=history, context_blocks=context_blocks
    )

    try:
        parsed, response = _call_model(
            provider, model=routing.selected_model, messages=messages, request_id=request_id, sleep=sleep
        )
    except RetryableError as exc:
        logger.error(
            "LLM retries exhausted",
            extra={"context": {"request_id": request_id, "model": routing.selected_model, "error": str(exc)}},
        )
        return _fallback(intent, context_blocks, routing, LLM_PATH_EXHAUSTED, "llm_retries_exhausted")
    except ExternalServiceError as exc:
        logger.error(
            "LLM request failed",
            extra={"context": {"request_id": request_id, "model": routing.selected_model, "error": str(exc)}},
        )
        return _fallback(intent, context_blocks, routing, LLM_PATH_EXHAUSTED, "llm_non_retryable_error")

    metadata: Dict[str, Any] = {
        "llmPath": LLM_PATH_PRIMARY,
        "fallbackReason": None,
        "model": response.model,
        "routingReason": routing.reason,
        "confidenceLabel": parsed.confidence_label,
        "requiresClarification": parsed.requires_clarification,
    }
    metadata.update(_usage_metadata(response))

    escalate = routing.selected_model != routing.fallback_model and should_escalate_to_primary(
        parsed.confidence_label, parsed.requires_clarification, intent
    )
    if escalate:
        try:
            parsed_primary, response_primary = _call_model(
                provider, model=routing.fallback_model, messages=messages, request_id=request_id, sleep=sleep
            )
        except ExternalServiceError as exc:
            logger.warning(
                "Primary model escalation failed, keeping economy reply",
                extra={"context": {"request_id": request_id, "error": str(exc)}},
            )
        else:
            parsed = parsed_primary
            metadata.update(
                {
                    "llmPath": LLM_PATH_ESCALATED,
                    "model": response_primary.model,
                    "escalatedFrom": response.model,
                    "confidenceLabel": parsed.confidence_label,
                    "requiresClarification": parsed.requires_clarification,
                }
            )
            primary_usage = _usage_metadata(response_primary)
            for key in ("inputTokens", "outputTokens", "cachedTokens"):
                metadata[key] += primary_usage[key]
            metadata["costUsd"] = round(metadata["costUsd"] + primary_usage["costUsd"], 6)

    return AssistantReply(message=_compose_message(parsed), metadata=metadata)
