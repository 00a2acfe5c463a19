from unittest.mock import Mock

import pytest

from app.services.catalog_client import CatalogPage
from app.services.catalog_matcher import CatalogItem
from app.services.context_service import build_availability_hint, enrich_context, stock_label
from app.services.errors import ExternalServiceError
from app.services.orders_client import OrdersAuthError, OrdersPage

NOW = 1_700_000_000_000


def _item(item_id, title, stock=5, amount=9500.0, categories=None):
    return CatalogItem(
        id=item_id,
        title=title,
        stock=stock,
        product_url=f"https://store.example.com/p/{item_id}",
        amount=amount,
        categories=categories or [],
    )


@pytest.fixture
def catalog():
    return Mock()


def _enrich(catalog, intent, text, entities=()):
    return enrich_context(intent=intent, text=text, entities=list(entities), catalog=catalog, current_ms=NOW)


class TestProducts:
    def test_best_match_and_snapshot(self, catalog):
        catalog.search_products.return_value = CatalogPage(
            items=[_item("1", "Naruto Tomo 1"), _item("2", "Naruto Tomo 2", stock=0, amount=9800.0)], total=2
        )
        result = _enrich(catalog, "products", "tenes naruto tomo 2?", ["naruto", "tomo 2"])

        catalog.search_products.assert_called_once_with(query="naruto")
        payload = result.context_blocks[0]["contextPayload"]
        assert result.context_types == ["products"]
        assert payload["bestMatch"]["id"] == "2"
        assert payload["availabilityHint"] == '"Naruto Tomo 2": sin stock, ARS 9.800,00.'
        assert [entry["id"] for entry in result.catalog_snapshot] == ["1", "2"]
        assert result.memory_update.last_franchise == "naruto"
        assert result.memory_update.snapshot_source == "products"
        assert result.tool_attempts == 1

    def test_no_results(self, catalog):
        catalog.search_products.return_value = CatalogPage()
        result = _enrich(catalog, "products", "zzz")
        assert result.context_blocks[0]["contextPayload"]["summary"] == 'No encontre productos para "zzz".'
        assert result.catalog_snapshot == []

    def test_catalog_down(self, catalog):
        catalog.search_products.side_effect = ExternalServiceError("catalog", "timeout")
        result = _enrich(catalog, "products", "naruto", ["naruto"])
        assert result.catalog_unavailable is True
        assert result.context_types == ["catalog_unavailable"]


class TestRecommendations:
    def test_broad_franchise_needs_disambiguation(self, catalog):
        catalog.search_products.return_value = CatalogPage(
            items=[_item("1", "Naruto 01", categories=["Mangas"]), _item("2", "Funko Naruto", categories=["Funko"])],
            total=20,
        )
        result = _enrich(catalog, "recommendations", "recomendame naruto", ["naruto"])

        catalog.get_recommendations.assert_not_called()
        assert result.disambiguation.needs_disambiguation is True
        assert result.disambiguation.reason == "franchise_scope"
        assert result.disambiguation.suggested_types == ["mangas", "merch_funko"]
        assert result.prompted_franchise == "naruto"
        payload = result.context_blocks[0]["contextPayload"]
        assert payload["matchedFranchises"] == ["naruto"]
        assert payload["recommendationsSource"] == "search"

    def test_preferred_type_filters_items(self, catalog):
        catalog.search_products.return_value = CatalogPage(
            items=[_item("1", "Naruto 01", categories=["Mangas"]), _item("2", "Funko Naruto", categories=["Funko"])],
            total=2,
        )
        result = _enrich(catalog, "recommendations", "recomendame un funko de naruto", ["naruto"])
        products = result.context_blocks[0]["contextPayload"]["products"]
        assert [product["id"] for product in products] == ["2"]
        assert result.disambiguation.needs_disambiguation is False

    def test_empty_search_falls_back_to_featured(self, catalog):
        catalog.search_products.return_value = CatalogPage()
        catalog.get_recommendations.return_value = CatalogPage(items=[_item("9", "Funko Goku")], total=1)
        result = _enrich(catalog, "recommendations", "recomendame naruto", ["naruto"])

        assert result.tool_attempts == 2
        assert result.prompted_franchise is None
        assert result.disambiguation is None
        assert result.context_blocks[0]["contextPayload"]["recommendationsSource"] == "featured"

    def test_without_franchise_uses_featured(self, catalog):
        catalog.get_recommendations.return_value = CatalogPage(items=[_item("9", "Funko Goku")], total=1)
        result = _enrich(catalog, "recommendations", "recomendame algo")
        catalog.search_products.assert_not_called()
        assert "Productos destacados:" in result.context_blocks[0]["contextPayload"]["aiContext"]

    def test_catalog_down(self, catalog):
        catalog.get_recommendations.side_effect = ExternalServiceError("catalog", "API error", 502)
        result = _enrich(catalog, "recommendations", "recomendame algo")
        assert result.catalog_unavailable is True


class TestOtherIntents:
    def test_payment_info(self, catalog):
        catalog.get_payment_info.return_value = {"methods": ["visa"]}
        result = _enrich(catalog, "payment_shipping", "como pago?")
        block = result.context_blocks[0]
        assert block["contextType"] == "payment_info"
        assert block["contextPayload"]["methods"] == ["visa"]
        assert block["contextPayload"]["aiContext"]

    def test_payment_info_unavailable_uses_static(self, catalog):
        catalog.get_payment_info.side_effect = ExternalServiceError("catalog", "timeout")
        result = _enrich(catalog, "payment_shipping", "como pago?")
        assert result.context_types == ["payment_shipping"]

    def test_static_context(self, catalog):
        assert _enrich(catalog, "store_info", "horarios?").context_types == ["store_info"]
        assert _enrich(catalog, "unknown", "hola").context_types == ["general"]
        catalog.search_products.assert_not_called()


def _enrich_orders(catalog, orders, text, access_token="tok"):
    return enrich_context(
        intent="orders",
        text=text,
        entities=[],
        catalog=catalog,
        current_ms=NOW,
        orders=orders,
        access_token=access_token,
        request_id="req-1",
    )


class TestOrders:
    def test_without_token_uses_static_context(self, catalog):
        orders = Mock()
        result = _enrich_orders(catalog, orders, "mis pedidos", access_token=None)
        assert result.context_types == ["orders"]
        assert "iniciar sesion" in result.context_blocks[0]["contextPayload"]["aiContext"]
        orders.list_orders.assert_not_called()

    def test_list_summary(self, catalog):
        orders = Mock()
        orders.list_orders.return_value = OrdersPage(
            orders=[
                {
                    "id": "10",
                    "state": "Entregado",
                    "state_canonical": "delivered",
                    "created_at": "2026-01-02",
                    "total": {"amount": 9500.0, "currency": "ARS"},
                }
            ],
            total=3,
        )
        result = _enrich_orders(catalog, orders, "mis pedidos")

        payload = result.context_blocks[0]["contextPayload"]
        assert result.context_types == ["orders"]
        assert payload["totalOrders"] == 3
        assert "- Pedido #10 | Entregado | 2026-01-02 | ARS 9.500,00" in payload["aiContext"]
        assert result.tool_attempts == 1

    def test_empty_list(self, catalog):
        orders = Mock()
        orders.list_orders.return_value = OrdersPage()
        payload = _enrich_orders(catalog, orders, "mis pedidos").context_blocks[0]["contextPayload"]
        assert payload["aiContext"] == "El cliente no tiene pedidos registrados en su cuenta."

    def test_detail_for_referenced_order(self, catalog):
        orders = Mock()
        orders.get_order.return_value = {"id": "78399", "state": "Enviado", "state_canonical": "shipped"}

        result = _enrich_orders(catalog, orders, "y el pedido 78399?")

        orders.get_order.assert_called_once_with("tok", 78399, request_id="req-1")
        assert result.context_types == ["order_detail"]
        assert "[PEDIDO #78399]" in result.context_blocks[0]["contextPayload"]["aiContext"]
        assert result.cancelled_order is None

    def test_cancelled_detail_is_flagged(self, catalog):
        orders = Mock()
        cancelled = {"id": "78399", "state": "Anulado", "state_canonical": "cancelled"}
        orders.get_order.return_value = cancelled
        assert _enrich_orders(catalog, orders, "pedido #78399").cancelled_order == cancelled

    def test_unknown_order(self, catalog):
        orders = Mock()
        orders.get_order.return_value = None
        payload = _enrich_orders(catalog, orders, "pedido 555").context_blocks[0]["contextPayload"]
        assert payload["aiContext"] == "No hay un pedido #555 en la cuenta del cliente."

    def test_rejected_token(self, catalog):
        orders = Mock()
        orders.list_orders.side_effect = OrdersAuthError("orders", "access token rejected", 401)
        result = _enrich_orders(catalog, orders, "mis pedidos")
        assert result.requires_auth is True
        assert result.context_blocks == []

    def test_backend_down(self, catalog):
        orders = Mock()
        orders.get_order.side_effect = ExternalServiceError("orders", "gave up after 2 attempts", 503)
        result = _enrich_orders(catalog, orders, "pedido 555")
        assert result.orders_unavailable is True
        assert result.requires_auth is False
        assert result.context_types == ["orders_unavailable"]


class TestLabels:
    def test_stock_label(self):
        assert stock_label(0) == "sin stock"
        assert stock_label(3) == "quedan pocas unidades"
        assert stock_label(4) == "hay stock"

    def test_availability_hint_without_price(self):
        item = CatalogItem(id="1", title="Berserk 1", stock=10)
        assert build_availability_hint(item) == '"Berserk 1": hay stock, No disponible.'
