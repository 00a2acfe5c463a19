"""Client for the signed-in customer's orders on the store backend.

Every call carries the customer's bearer token. A rejected token surfaces as
OrdersAuthError so the caller can ask the user to sign in again; timeouts,
network errors and 5xx are retried before giving up with ExternalServiceError.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.errors import ExternalServiceError, RetryableError, is_retryable_status
from app.services.retry import RetryPolicy, call_with_retry
from app.services.text_normalize import contains_any_term, normalize_for_search

logger = get_logger("orders_client")

SERVICE_NAME = "orders"
ORDERS_PATH = "/account/orders"
ORDER_LIST_KEYS = ("data", "orders", "items")
ORDER_STATE_FIELDS = ("state", "status", "order_status", "shipping_status")
UNAUTHENTICATED_MARKERS = (
    "unauthenticated",
    "unauthorized",
    "invalid token",
    "token expired",
    "jwt expired",
    "session expired",
)

ORDER_STATE_TERMS = (
    ("pending", ("pending", "pendiente", "en espera", "awaiting payment", "pago pendiente", "payment pending")),
    ("processing", ("processing", "en preparacion", "preparando", "packing", "armado")),
    ("shipped", ("shipped", "enviado", "despachado", "en transito", "in transit")),
    ("delivered", ("delivered", "entregado", "completado", "finalizado")),
    ("cancelled", ("cancelled", "canceled", "cancelado", "anulado", "rechazado")),
)


class OrdersAuthError(ExternalServiceError):
    """The backend rejected the customer's access token."""


@dataclass
class OrdersPage:
    orders: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0


def canonical_order_state(raw_state: Optional[str]) -> str:
    normalized = normalize_for_search(raw_state)
    if not normalized:
        return "unknown"
    for canonical, terms in ORDER_STATE_TERMS:
        if contains_any_term(normalized, terms):
            return canonical
    return "unknown"


def _text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _nested_text(value: Any, *keys: str) -> Optional[str]:
    if isinstance(value, dict):
        for key in keys:
            found = _text(value.get(key))
            if found:
                return found
        return None
    return _text(value)


def _money(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, dict):
        amount, currency = value.get("amount"), value.get("currency") or "ARS"
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


def parse_account_order(raw: Any) -> Optional[Dict[str, Any]]:
    """Normalize one backend order; None when it has no usable id."""
    if not isinstance(raw, dict):
        return None
    order_id = _text(raw.get("id"))
    if order_id is None:
        return None

    state = next((_text(raw.get(key)) for key in ORDER_STATE_FIELDS if _text(raw.get(key))), None)
    order: Dict[str, Any] = {
        "id": order_id,
        "state": state or "Sin estado",
        "state_canonical": canonical_order_state(state),
    }
    optional = {
        "created_at": _text(raw.get("created_at")),
        "ship_method": _text(raw.get("shipMethod") or raw.get("ship_method")),
        "tracking_code": _text(raw.get("shipTrackingCode") or raw.get("tracking_code")),
        "payment_method": _nested_text(raw.get("payment") or raw.get("payment_method"), "payment_method", "method", "name"),
        "total": _money(raw.get("total")),
    }
    order.update({key: value for key, value in optional.items() if value})
    return order


def parse_orders_page(body: Any) -> OrdersPage:
    if not isinstance(body, dict):
        return OrdersPage()
    raw_orders: List[Any] = []
    for key in ORDER_LIST_KEYS:
        if isinstance(body.get(key), list):
            raw_orders = body[key]
            break
    orders = [order for order in (parse_account_order(raw) for raw in raw_orders) if order]

    total: Any = None
    if isinstance(body.get("pagination"), dict):
        total = body["pagination"].get("total")
    if isinstance(total, str) and total.strip().isdigit():
        total = int(total)
    if isinstance(total, bool) or not isinstance(total, int) or total < len(orders):
        total = len(orders)
    return OrdersPage(orders=orders, total=total)


def parse_order_detail(body: Any) -> Optional[Dict[str, Any]]:
    if isinstance(body, dict) and isinstance(body.get("order"), dict):
        return parse_account_order(body["order"])
    return parse_account_order(body)


def is_unauthenticated_payload(body: Any) -> bool:
    """Some backend routes answer 200 with an auth error message in the body."""
    if not isinstance(body, dict):
        return False
    for key in ("message", "error"):
        value = body.get(key)
        if isinstance(value, str) and any(marker in value.strip().lower() for marker in UNAUTHENTICATED_MARKERS):
            return True
    return False


class OrdersClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        retry_max: Optional[int] = None,
        retry_backoff_ms: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url or settings.orders_api_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.orders_timeout_seconds
        self.retry_max = max(retry_max if retry_max is not None else settings.orders_retry_max, 0)
        self.retry_backoff_ms = max(
            retry_backoff_ms if retry_backoff_ms is not None else settings.orders_retry_backoff_ms, 0
        )
        self._transport = transport
        self._sleep = sleep

    def _backoff_ms(self, attempt: int) -> int:
        return self.retry_backoff_ms * 2 ** max(attempt - 1, 0)

    def _get_once(self, client: httpx.Client, path: str, access_token: str) -> Any:
        headers = {"Accept": "application/json", "Authorization": f"Bearer {access_token}"}
        try:
            response = client.get(f"{self.base_url}{path}", headers=headers)
        except httpx.TimeoutException as exc:
            raise RetryableError(SERVICE_NAME, f"timeout after {self.timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise RetryableError(SERVICE_NAME, f"network error: {type(exc).__name__}") from exc

        status = response.status_code
        if status in (401, 403):
            raise OrdersAuthError(SERVICE_NAME, "access token rejected", status)
        if status == 404:
            return None
        if status != 200:
            if is_retryable_status(status):
                raise RetryableError(SERVICE_NAME, "backend unavailable", status)
            raise ExternalServiceError(SERVICE_NAME, "unexpected backend status", status)

        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalServiceError(SERVICE_NAME, "response body is not JSON") from exc
        if is_unauthenticated_payload(body):
            raise OrdersAuthError(SERVICE_NAME, "unauthenticated response body", 401)
        return body

    def _get_json(self, path: str, access_token: str, request_id: Optional[str]) -> Any:
        """JSON body of ``path``, or None on 404."""
        token = (access_token or "").strip()
        if not token:
            raise OrdersAuthError(SERVICE_NAME, "missing access token")
        policy = RetryPolicy(max_attempts=self.retry_max + 1, backoff_fn=self._backoff_ms)

        def on_retry(attempt: int, exc: BaseException) -> None:
            logger.warning(
                "Orders backend failed transiently; retrying",
                extra={"context": {"request_id": request_id, "path": path, "retry_count": attempt, "error": str(exc)}},
            )

        with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
            try:
                return call_with_retry(
                    lambda: self._get_once(client, path, token), policy, sleep=self._sleep, on_retry=on_retry
                )
            except RetryableError as exc:
                raise ExternalServiceError(
                    SERVICE_NAME, f"gave up after {policy.max_attempts} attempts: {exc}", exc.status_code
                ) from exc

    def list_orders(self, access_token: str, request_id: Optional[str] = None) -> OrdersPage:
        return parse_orders_page(self._get_json(ORDERS_PATH, access_token, request_id))

    def get_order(self, access_token: str, order_id: Any, request_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Order detail, or None when the order is not in the customer's account."""
        body = self._get_json(f"{ORDERS_PATH}/{quote(str(order_id), safe='')}", access_token, request_id)
        if body is None:
            return None
        return parse_order_detail(body)


_orders_client: Optional[OrdersClient] = None


def get_orders_client() -> OrdersClient:
    global _orders_client
    if _orders_client is None:
        _orders_client = OrdersClient()
    return _orders_client
