from typing import Any, Dict, List, Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import ExternalServiceError, RetryableError, is_retryable_status
from app.services.llm.base import LLMProvider, LLMUsage, StructuredLLMResponse

logger = get_logger("llm.openai")

SERVICE_NAME = "openai"


def _int_or_zero(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(int(value), 0)


def extract_usage(data: Dict[str, Any]) -> LLMUsage:
    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    details = usage.get("input_tokens_details") or usage.get("prompt_tokens_details") or {}
    return LLMUsage(
        input_tokens=_int_or_zero(usage.get("input_tokens", usage.get("prompt_tokens"))),
        output_tokens=_int_or_zero(usage.get("output_tokens", usage.get("completion_tokens"))),
        cached_tokens=_int_or_zero(details.get("cached_tokens") if isinstance(details, dict) else None),
    )


def extract_output_text(data: Dict[str, Any]) -> str:
    """Concatenate every output_text part of a Responses API payload."""
    if isinstance(data.get("output_text"), str):
        return data["output_text"]
    parts = []
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for content in item.get("content") or []:
            if isinstance(content, dict) and content.get("type") == "output_text":
                parts.append(str(content.get("text") or ""))
    return "".join(parts)


class OpenAIProvider(LLMProvider):
    """OpenAI Responses API provider with strict JSON schema output."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.responses_url = f"{base_url.rstrip('/')}/responses"
        self._transport = transport

    def generate_structured(
        self,
        messages: List[dict],
        model: str,
        schema: Dict[str, Any],
        max_tokens: int,
        timeout_seconds: float,
        idempotency_key: Optional[str] = None,
    ) -> StructuredLLMResponse:
        payload = {
            "model": model,
            "input": messages,
            "max_output_tokens": max_tokens,
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": schema.get("title", "assistant_reply"),
                    "schema": schema,
                    "strict": True,
                }
            },
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=timeout_seconds, transport=self._transport) as client:
                response = client.post(
                    self.responses_url,
                    headers=headers,
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise RetryableError(SERVICE_NAME, f"timeout after {timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise RetryableError(SERVICE_NAME, f"network error: {type(exc).__name__}") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.warning(f"OpenAI error: {response.status_code} - {response.text[:200]}")
            if is_retryable_status(response.status_code):
                raise RetryableError(SERVICE_NAME, "transient API error", response.status_code)
            raise ExternalServiceError(SERVICE_NAME, "API error", response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise RetryableError(SERVICE_NAME, "response body is not JSON") from exc

        return StructuredLLMResponse(
            content=extract_output_text(data),
            model=data.get("model", model),
            usage=extract_usage(data),
            response_id=data.get("id"),
        )
