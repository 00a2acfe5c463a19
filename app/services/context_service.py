"""Intent-keyed context enrichment for the LLM reply.

Catalog-backed intents (products, recommendations) query the catalog API and
also produce the catalog snapshot, the recommendations memory update and the
disambiguation decision for the turn. Orders for a signed-in customer come
from the orders backend. Every other intent gets a static block.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from app.config import settings
from app.logging_config import get_logger
from app.services.catalog_client import CatalogClient, CatalogPage
from app.services.catalog_matcher import CatalogItem, select_best_product_match
from app.services.errors import ExternalServiceError
from app.services.flows.order_lookup_request import resolve_order_id
from app.services.flows.recommendations_memory import MemoryUpdate, resolve_memory_update_from_context
from app.services.orders_client import OrdersAuthError, OrdersClient, OrdersPage
from app.services.price_comparison import build_catalog_snapshot
from app.services.recommendation_signals import (
    DisambiguationDecision,
    detect_franchises,
    detect_recommendation_type,
    detect_recommendation_types,
    franchise_label,
    franchise_query,
    resolve_recommendation_disambiguation,
)
from app.services.responses import format_money, order_lookup_success_message

logger = get_logger("context_service")

LOW_STOCK_THRESHOLD = 3
MAX_CONTEXT_ITEMS = 5

STATIC_CONTEXT = {
    "orders": (
        "Para ver el estado de un pedido hace falta iniciar sesion, o bien el numero de pedido "
        "y al menos 2 datos del comprador (dni, nombre, apellido, telefono)."
    ),
    "tickets": (
        "Para reclamos o productos con fallas, pedi el numero de pedido y una descripcion del problema. "
        f"Soporte: WhatsApp {settings.support_whatsapp}, email {settings.support_email}."
    ),
    "store_info": (
        "Entelequia tiene tienda online y locales en CABA. "
        f"Contacto: WhatsApp {settings.support_whatsapp}, email {settings.support_email}."
    ),
    "payment_shipping": (
        "Medios de pago: tarjetas de credito y debito, transferencia y Mercado Pago. "
        "Envios a todo el pais y retiro en local."
    ),
    "general": "Entelequia vende mangas, comics, libros, juegos y merchandising.",
}


@dataclass
class EnrichmentResult:
    context_blocks: List[Dict[str, Any]] = field(default_factory=list)
    catalog_snapshot: List[Dict[str, Any]] = field(default_factory=list)
    memory_update: Optional[MemoryUpdate] = None
    disambiguation: Optional[DisambiguationDecision] = None
    prompted_franchise: Optional[str] = None
    catalog_unavailable: bool = False
    orders_unavailable: bool = False
    requires_auth: bool = False
    cancelled_order: Optional[Dict[str, Any]] = None
    tool_attempts: int = 0

    @property
    def context_types(self) -> List[str]:
        return [block.get("contextType") for block in self.context_blocks]


def _static_block(intent: str) -> Dict[str, Any]:
    return {
        "contextType": intent if intent in STATIC_CONTEXT else "general",
        "contextPayload": {"aiContext": STATIC_CONTEXT.get(intent, STATIC_CONTEXT["general"])},
    }


def _item_payload(item: CatalogItem) -> Dict[str, Any]:
    payload = asdict(item)
    payload["price"] = format_money(item.amount, item.currency)
    return payload


def stock_label(stock: int) -> str:
    if stock <= 0:
        return "sin stock"
    if stock <= LOW_STOCK_THRESHOLD:
        return "quedan pocas unidades"
    return "hay stock"


def build_items_summary(items: Sequence[CatalogItem], header: str) -> str:
    lines = [header]
    for item in items[:MAX_CONTEXT_ITEMS]:
        lines.append(f"- {item.title} | {format_money(item.amount, item.currency)} | {stock_label(item.stock)}")
    return "\n".join(lines)


def build_availability_hint(item: CatalogItem) -> str:
    return f'"{item.title}": {stock_label(item.stock)}, {format_money(item.amount, item.currency)}.'


def resolve_product_query(text: str, entities: Sequence[str]) -> str:
    for entity in entities:
        if isinstance(entity, str) and entity.strip() and not entity.strip().isdigit():
            return entity.strip()
    return (text or "").strip()


def _item_types(item: CatalogItem) -> List[str]:
    return detect_recommendation_types(item.title, item.categories)


def _suggested_types(items: Sequence[CatalogItem]) -> List[str]:
    found = []
    for item in items:
        for category in item.categories or [item.title]:
            type_key = detect_recommendation_type(category)
            if type_key and type_key not in found:
                found.append(type_key)
    return found


def _catalog_unavailable(intent: str) -> EnrichmentResult:
    return EnrichmentResult(
        context_blocks=[{"contextType": "catalog_unavailable", "contextPayload": {"intent": intent}}],
        catalog_unavailable=True,
        tool_attempts=1,
    )


def enrich_products(text: str, entities: Sequence[str], catalog: CatalogClient, current_ms: int) -> EnrichmentResult:
    query = resolve_product_query(text, entities)
    try:
        page = catalog.search_products(query=query)
    except ExternalServiceError as exc:
        logger.warning(f"Catalog search failed: {exc}")
        return _catalog_unavailable("products")

    if not page.items:
        block = {
            "contextType": "products",
            "contextPayload": {
                "items": [],
                "total": 0,
                "resolvedQuery": {"productName": query},
                "summary": f'No encontre productos para "{query}".',
            },
        }
        return EnrichmentResult(context_blocks=[block], tool_attempts=1)

    payload: Dict[str, Any] = {
        "items": [_item_payload(item) for item in page.items[:MAX_CONTEXT_ITEMS]],
        "total": page.total,
        "resolvedQuery": {"productName": query},
        "summary": build_items_summary(page.items, f'Resultados para "{query}" ({page.total}):'),
    }
    best = select_best_product_match(page.items, entities, text)
    if best is not None:
        payload["bestMatch"] = _item_payload(best)
        payload["availabilityHint"] = build_availability_hint(best)

    blocks = [{"contextType": "products", "contextPayload": payload}]
    return EnrichmentResult(
        context_blocks=blocks,
        catalog_snapshot=build_catalog_snapshot(page.items),
        memory_update=resolve_memory_update_from_context(blocks, text, entities, current_ms),
        tool_attempts=1,
    )


def enrich_recommendations(
    text: str, entities: Sequence[str], catalog: CatalogClient, current_ms: int
) -> EnrichmentResult:
    franchises = detect_franchises(text, entities)
    preferred_types = detect_recommendation_types(text, entities)
    franchise = franchises[0] if franchises else None

    attempts = 0
    source = "featured"
    page = CatalogPage()
    try:
        if franchise:
            attempts += 1
            page = catalog.search_products(query=franchise_query(franchise))
            source = "search"
        if not page.items:
            attempts += 1
            page = catalog.get_recommendations()
            source = "featured"
    except ExternalServiceError as exc:
        logger.warning(f"Catalog recommendations failed: {exc}")
        return _catalog_unavailable("recommendations")

    items = page.items
    if preferred_types:
        typed = [item for item in items if set(_item_types(item)) & set(preferred_types)]
        items = typed or items

    decision = None
    if franchise and source == "search":
        decision = resolve_recommendation_disambiguation(
            text=text,
            franchise=franchise,
            suggested_types=_suggested_types(items),
            total_candidates=page.total,
            preferred_types=preferred_types,
            franchise_threshold=settings.recommendations_franchise_threshold,
            volume_threshold=settings.recommendations_volume_threshold,
        )

    header = (
        f"Recomendaciones de {franchise_label(franchise)}:" if franchise and source == "search"
        else "Productos destacados:"
    )
    payload = {
        "products": [_item_payload(item) for item in items[:MAX_CONTEXT_ITEMS]],
        "total": page.total,
        "matchedFranchises": [franchise] if franchise and source == "search" else [],
        "preferences": {"type": preferred_types},
        "recommendationsSource": source,
        "aiContext": build_items_summary(items, header) if items else None,
    }
    blocks = [{"contextType": "recommendations", "contextPayload": payload}]

    prompted = franchise if franchise and source == "search" and items else None
    return EnrichmentResult(
        context_blocks=blocks,
        catalog_snapshot=build_catalog_snapshot(items),
        memory_update=resolve_memory_update_from_context(blocks, text, entities, current_ms),
        disambiguation=decision,
        prompted_franchise=prompted,
        tool_attempts=attempts,
    )


def enrich_payment_shipping(catalog: CatalogClient) -> EnrichmentResult:
    try:
        info = catalog.get_payment_info()
    except ExternalServiceError as exc:
        logger.info(f"Payment info unavailable, using static context: {exc}")
        return EnrichmentResult(context_blocks=[_static_block("payment_shipping")], tool_attempts=1)

    payload = dict(info)
    payload.setdefault("aiContext", STATIC_CONTEXT["payment_shipping"])
    return EnrichmentResult(context_blocks=[{"contextType": "payment_info", "contextPayload": payload}], tool_attempts=1)


def build_orders_list_context(page: OrdersPage) -> str:
    if not page.orders:
        return "El cliente no tiene pedidos registrados en su cuenta."
    lines = [f"Ultimos pedidos del cliente ({len(page.orders[:MAX_CONTEXT_ITEMS])} de {page.total}):"]
    for order in page.orders[:MAX_CONTEXT_ITEMS]:
        total = order.get("total")
        amount = format_money(total["amount"], total["currency"]) if total else "total no disponible"
        lines.append(f"- Pedido #{order['id']} | {order['state']} | {order.get('created_at', 'sin fecha')} | {amount}")
    lines.append("Si pregunta por un pedido puntual, pedile el numero para darle el detalle.")
    return "\n".join(lines)


def enrich_orders(
    text: str,
    entities: Sequence[str],
    access_token: str,
    orders: OrdersClient,
    request_id: Optional[str] = None,
) -> EnrichmentResult:
    order_id = resolve_order_id(text, entities)
    try:
        if order_id is None:
            page = orders.list_orders(access_token, request_id=request_id)
            payload = {
                "orders": page.orders[:MAX_CONTEXT_ITEMS],
                "totalOrders": page.total,
                "aiContext": build_orders_list_context(page),
            }
            return EnrichmentResult(context_blocks=[{"contextType": "orders", "contextPayload": payload}], tool_attempts=1)
        order = orders.get_order(access_token, order_id, request_id=request_id)
    except OrdersAuthError as exc:
        logger.info(f"Orders backend rejected the access token: {exc}")
        return EnrichmentResult(requires_auth=True, tool_attempts=1)
    except ExternalServiceError as exc:
        logger.warning(f"Orders backend failed: {exc}")
        return EnrichmentResult(
            context_blocks=[{"contextType": "orders_unavailable", "contextPayload": {"orderId": order_id}}],
            orders_unavailable=True,
            tool_attempts=1,
        )

    if order is None:
        payload = {"orderId": order_id, "aiContext": f"No hay un pedido #{order_id} en la cuenta del cliente."}
        return EnrichmentResult(context_blocks=[{"contextType": "order_detail", "contextPayload": payload}], tool_attempts=1)

    payload = {"orderId": order["id"], "order": order, "aiContext": order_lookup_success_message(order)}
    return EnrichmentResult(
        context_blocks=[{"contextType": "order_detail", "contextPayload": payload}],
        cancelled_order=order if order.get("state_canonical") == "cancelled" else None,
        tool_attempts=1,
    )


def enrich_context(
    *,
    intent: str,
    text: str,
    entities: Sequence[str],
    catalog: CatalogClient,
    current_ms: int,
    orders: Optional[OrdersClient] = None,
    access_token: Optional[str] = None,
    request_id: Optional[str] = None,
) -> EnrichmentResult:
    """Context blocks for ``intent``.

    Orders are fetched with the customer's token when there is one; without it
    the orders intent only gets the static sign-in guidance.
    """
    if intent == "orders" and orders is not None and (access_token or "").strip():
        return enrich_orders(text, entities, access_token, orders, request_id=request_id)
    if intent == "products":
        return enrich_products(text, entities, catalog, current_ms)
    if intent == "recommendations":
        return enrich_recommendations(text, entities, catalog, current_ms)
    if intent == "payment_shipping":
        return enrich_payment_shipping(catalog)
    return EnrichmentResult(context_blocks=[_static_block(intent)])
