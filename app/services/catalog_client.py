"""Read-only client for the store catalog API."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.catalog_matcher import CatalogItem, parse_catalog_item
from app.services.errors import ExternalServiceError

logger = get_logger("catalog_client")

SERVICE_NAME = "catalog"
ITEM_LIST_KEYS = ("items", "products", "data")


@dataclass
class CatalogPage:
    items: List[CatalogItem] = field(default_factory=list)
    total: int = 0
    skipped: int = 0


def parse_catalog_page(body: Any) -> CatalogPage:
    """Keep every valid item; malformed ones are counted, not raised."""
    if not isinstance(body, dict):
        return CatalogPage()

    raw_items: List[Any] = []
    for key in ITEM_LIST_KEYS:
        if isinstance(body.get(key), list):
            raw_items = body[key]
            break

    items, skipped = [], 0
    for raw in raw_items:
        parsed = parse_catalog_item(raw)
        if parsed.ok:
            items.append(parsed.value)
        else:
            skipped += 1

    total = body.get("total")
    pagination = body.get("pagination")
    if not isinstance(total, int) and isinstance(pagination, dict):
        total = pagination.get("total")
    if isinstance(total, bool) or not isinstance(total, int) or total < len(items):
        total = len(items)

    return CatalogPage(items=items, total=total, skipped=skipped)


class CatalogClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 4.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.get(url, params=params, headers={"Accept": "application/json"})
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(SERVICE_NAME, f"timeout after {self.timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(SERVICE_NAME, f"network error: {type(exc).__name__}") from exc

        if response.status_code != 200:
            logger.warning(f"Catalog API error: {response.status_code} on {path}")
            raise ExternalServiceError(SERVICE_NAME, "API error", response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError(SERVICE_NAME, "response body is not JSON") from exc

    def search_products(
        self,
        query: Optional[str] = None,
        category_slug: Optional[str] = None,
        currency: str = "ARS",
    ) -> CatalogPage:
        path = "/products-list"
        if category_slug:
            path = f"{path}/{category_slug}"
        params = {"orderBy": "recent", "page": "1", "currency": currency}
        if query and query.strip():
            params["q"] = query.strip()

        page = parse_catalog_page(self._get_json(path, params))
        if page.skipped:
            logger.info(f"Catalog search skipped {page.skipped} malformed items")
        return page

    def get_recommendations(self, currency: str = "ARS") -> CatalogPage:
        return parse_catalog_page(self._get_json("/products/recommended", {"page": "1", "currency": currency}))

    def get_payment_info(self) -> Dict[str, Any]:
        body = self._get_json("/cart/payment-info")
        return body if isinstance(body, dict) else {}


_catalog_client: Optional[CatalogClient] = None


def get_catalog_client() -> CatalogClient:
    global _catalog_client
    if _catalog_client is None:
        _catalog_client = CatalogClient(
            base_url=settings.catalog_api_base_url,
            timeout_seconds=settings.catalog_timeout_seconds,
        )
    return _catalog_client
