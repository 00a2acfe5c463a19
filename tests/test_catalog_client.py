import httpx
import pytest

from app.services.catalog_client import CatalogClient, parse_catalog_page
from app.services.errors import ExternalServiceError


def _client(handler):
    return CatalogClient(base_url="https://store.example.com/api/v1/", transport=httpx.MockTransport(handler))


class TestParseCatalogPage:
    def test_malformed_items_are_skipped(self):
        page = parse_catalog_page(
            {
                "products": [
                    {"id": 1, "title": "Naruto 01", "stock": 3, "price": {"amount": 9500, "currency": "ARS"}},
                    {"id": 2},
                    "garbage",
                ],
                "pagination": {"total": 40},
            }
        )
        assert [item.title for item in page.items] == ["Naruto 01"]
        assert page.items[0].amount == 9500.0
        assert page.skipped == 2
        assert page.total == 40

    def test_total_never_below_item_count(self):
        page = parse_catalog_page({"items": [{"id": 1, "title": "A"}, {"id": 2, "title": "B"}], "total": 1})
        assert page.total == 2

    def test_non_object(self):
        assert parse_catalog_page(["x"]).items == []


class TestCatalogClient:
    def test_search_builds_query(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"items": [{"id": 7, "title": "Naruto 07"}], "total": 1})

        page = _client(handler).search_products(query=" naruto ", category_slug="mangas", currency="USD")

        assert seen["url"].path == "/api/v1/products-list/mangas"
        assert seen["url"].params["q"] == "naruto"
        assert seen["url"].params["currency"] == "USD"
        assert seen["url"].params["orderBy"] == "recent"
        assert page.items[0].id == "7"

    def test_recommendations(self):
        def handler(request):
            assert request.url.path == "/api/v1/products/recommended"
            return httpx.Response(200, json={"data": [{"id": "a", "title": "Funko Goku"}]})

        assert _client(handler).get_recommendations().items[0].title == "Funko Goku"

    def test_payment_info_non_object(self):
        assert _client(lambda request: httpx.Response(200, json=[1, 2])).get_payment_info() == {}

    def test_error_status_raises(self):
        with pytest.raises(ExternalServiceError) as exc_info:
            _client(lambda request: httpx.Response(503, json={})).search_products(query="naruto")
        assert exc_info.value.status_code == 503

    def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(ExternalServiceError):
            _client(handler).get_recommendations()
