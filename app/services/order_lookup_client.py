"""Signed client for the backend guest order lookup endpoint."""

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.errors import ExternalServiceError, RetryableError, is_retryable_status
from app.services.result import Result
from app.services.retry import RetryPolicy, call_with_retry

logger = get_logger("order_lookup_client")

SERVICE_NAME = "order_lookup"
ORDER_LOOKUP_METHOD = "POST"
ORDER_LOOKUP_PATH = "/bot/order-lookup"
# 401 reasons that a fresh timestamp, nonce and signature can fix
STALE_SIGNATURE_MARKERS = ("timestamp", "signature", "nonce", "expired", "stale", "replay")


@dataclass
class OrderLookupResult:
    ok: bool
    code: str  # success, not_found_or_mismatch, invalid_payload, unauthorized, throttled
    status_code: int
    order: Optional[Dict[str, Any]] = None


def build_lookup_payload(order_id: int, identity: Dict[str, str]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"order_id": order_id}
    for key in ("dni", "name", "last_name", "phone"):
        value = identity.get(key)
        if isinstance(value, str) and value.strip():
            payload[key] = value.strip()
    return payload


def build_canonical_string(method: str, path: str, timestamp: str, nonce: str, raw_body: bytes) -> str:
    body_hash = hashlib.sha256(raw_body).hexdigest()
    return "\n".join([method, path, timestamp, nonce, body_hash])


def sign_request(secret: str, canonical: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def _optional_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_total(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, dict):
        amount = value.get("amount")
        currency = value.get("currency") or "ARS"
    else:
        amount, currency = value, "ARS"
    if isinstance(amount, str):
        try:
            amount = float(amount.replace(",", "."))
        except ValueError:
            return None
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return None
    return {"amount": float(amount), "currency": str(currency)}


def parse_lookup_order(body: Any, fallback_order_id: int) -> Result[Dict[str, Any]]:
    """Normalize a 200 response body into an order summary."""
    if not isinstance(body, dict):
        return Result.failure("order lookup body is not an object", "invalid_payload")
    container = body.get("order") if isinstance(body.get("order"), dict) else body

    raw_id = container.get("id")
    if isinstance(raw_id, bool) or not isinstance(raw_id, (int, str)) or str(raw_id).strip() == "":
        raw_id = fallback_order_id

    order: Dict[str, Any] = {
        "id": raw_id.strip() if isinstance(raw_id, str) else raw_id,
        "state": _optional_text(container.get("state")) or "Sin estado",
    }
    for key in ("created_at", "updated_at", "payment_method", "ship_method", "tracking_code"):
        value = _optional_text(container.get(key))
        if value:
            order[key] = value
    total = _parse_total(container.get("total"))
    if total:
        order["total"] = total
    return Result.success(order)


def is_stale_signature_rejection(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    reason = " ".join(str(body.get(key) or "") for key in ("reason", "message", "error", "code")).lower()
    return any(marker in reason for marker in STALE_SIGNATURE_MARKERS)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class OrderLookupClient:
    def __init__(
        self,
        base_url: str | None = None,
        hmac_secret: str | None = None,
        timeout_ms: int | None = None,
        retry_max: int | None = None,
        retry_backoff_ms: int | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = (base_url or settings.bot_order_lookup_base_url).rstrip("/")
        self.hmac_secret = hmac_secret if hmac_secret is not None else settings.bot_order_lookup_hmac_secret
        self.timeout_seconds = (timeout_ms if timeout_ms is not None else settings.bot_order_lookup_timeout_ms) / 1000
        self.retry_max = max(retry_max if retry_max is not None else settings.bot_order_lookup_retry_max, 0)
        self.retry_backoff_ms = max(
            retry_backoff_ms if retry_backoff_ms is not None else settings.bot_order_lookup_retry_backoff_ms, 0
        )
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    @property
    def url(self) -> str:
        return f"{self.base_url}{ORDER_LOOKUP_PATH}"

    @property
    def canonical_path(self) -> str:
        return urlparse(self.url).path

    def _signed_headers(self, raw_body: bytes) -> Dict[str, str]:
        secret = (self.hmac_secret or "").strip()
        if not secret:
            raise ExternalServiceError(SERVICE_NAME, "hmac secret is not configured")
        timestamp = str(int(self._clock()))
        nonce = str(uuid.uuid4())
        canonical = build_canonical_string(ORDER_LOOKUP_METHOD, self.canonical_path, timestamp, nonce, raw_body)
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Bot-Timestamp": timestamp,
            "X-Bot-Nonce": nonce,
            "X-Bot-Signature": sign_request(secret, canonical),
        }

    def _post(self, client: httpx.Client, raw_body: bytes) -> httpx.Response:
        try:
            return client.post(self.url, content=raw_body, headers=self._signed_headers(raw_body))
        except httpx.TimeoutException as exc:
            raise RetryableError(SERVICE_NAME, f"timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RetryableError(SERVICE_NAME, f"network error: {exc}") from exc

    def _backoff_ms(self, attempt: int) -> int:
        return self.retry_backoff_ms * 2 ** max(attempt - 1, 0)

    def lookup_order(self, *, request_id: str, order_id: int, identity: Dict[str, str]) -> OrderLookupResult:
        """Timeouts, network errors and 5xx are retried up to ``retry_max`` times.

        Raises ExternalServiceError once those retries run out, or for any
        other unexpected status.
        """
        raw_body = json.dumps(build_lookup_payload(order_id, identity), separators=(",", ":")).encode("utf-8")
        policy = RetryPolicy(max_attempts=self.retry_max + 1, backoff_fn=self._backoff_ms)

        def on_retry(attempt: int, exc: BaseException) -> None:
            logger.warning(
                "Order lookup failed transiently; retrying",
                extra={"context": {"request_id": request_id, "retry_count": attempt, "error": str(exc)}},
            )

        with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
            try:
                return call_with_retry(
                    lambda: self._lookup_once(client, raw_body, request_id=request_id, order_id=order_id),
                    policy,
                    sleep=self._sleep,
                    on_retry=on_retry,
                )
            except RetryableError as exc:
                raise ExternalServiceError(
                    SERVICE_NAME, f"gave up after {policy.max_attempts} attempts: {exc}", exc.status_code
                ) from exc

    def _lookup_once(self, client: httpx.Client, raw_body: bytes, *, request_id: str, order_id: int) -> OrderLookupResult:
        unauthorized_retries = 0
        throttled_retries = 0

        while True:
            response = self._post(client, raw_body)
            status = response.status_code
            body = _json_or_none(response)

            if status == 200:
                parsed = parse_lookup_order(body, order_id)
                if not parsed.ok:
                    logger.warning(
                        "Order lookup returned an unparseable body",
                        extra={"context": {"request_id": request_id, "error": parsed.error}},
                    )
                    return OrderLookupResult(ok=False, code="invalid_payload", status_code=200)
                return OrderLookupResult(ok=True, code="success", status_code=200, order=parsed.value)

            if status == 401:
                if unauthorized_retries < 1 and is_stale_signature_rejection(body):
                    unauthorized_retries += 1
                    logger.warning(
                        "Order lookup signature rejected; retrying with a fresh signature",
                        extra={"context": {"request_id": request_id, "canonical_path": self.canonical_path}},
                    )
                    continue
                return OrderLookupResult(ok=False, code="unauthorized", status_code=401)

            if status == 404:
                return OrderLookupResult(ok=False, code="not_found_or_mismatch", status_code=404)

            if status == 422:
                return OrderLookupResult(ok=False, code="invalid_payload", status_code=422)

            if status == 429:
                if throttled_retries < self.retry_max:
                    throttled_retries += 1
                    backoff_ms = self._backoff_ms(throttled_retries)
                    logger.warning(
                        "Order lookup throttled; backing off",
                        extra={"context": {"request_id": request_id, "retry_count": throttled_retries, "backoff_ms": backoff_ms}},
                    )
                    self._sleep(backoff_ms / 1000)
                    continue
                return OrderLookupResult(ok=False, code="throttled", status_code=429)

            if is_retryable_status(status):
                raise RetryableError(SERVICE_NAME, "backend unavailable", status)
            raise ExternalServiceError(SERVICE_NAME, "unexpected backend status", status)


_order_lookup_client: OrderLookupClient | None = None


def get_order_lookup_client() -> OrderLookupClient:
    global _order_lookup_client
    if _order_lookup_client is None:
        _order_lookup_client = OrderLookupClient()
    return _order_lookup_client
