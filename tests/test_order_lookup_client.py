import hashlib
import json
from unittest.mock import Mock

import httpx
import pytest

from app.services.errors import ExternalServiceError
from app.services.order_lookup_client import (
    OrderLookupClient,
    build_canonical_string,
    build_lookup_payload,
    is_stale_signature_rejection,
    parse_lookup_order,
    sign_request,
)

IDENTITY = {"dni": "12345678", "name": "Juan", "last_name": "", "phone": None}


def _client(responses, sleep=None, secret="s3cret", retry_max=1):
    requests = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, body = queue.pop(0)
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status, json=body)

    client = OrderLookupClient(
        base_url="https://api.example.com/api/v1/",
        hmac_secret=secret,
        timeout_ms=1000,
        retry_max=retry_max,
        retry_backoff_ms=200,
        transport=httpx.MockTransport(handler),
        sleep=sleep or Mock(),
        clock=lambda: 1_700_000_000,
    )
    return client, requests


def _lookup(client):
    return client.lookup_order(request_id="req-1", order_id=78399, identity=IDENTITY)


class TestSigning:
    def test_request_is_signed_over_canonical_string(self):
        client, requests = _client([(200, {"order": {"id": 78399, "state": "Enviado"}})])
        _lookup(client)

        request = requests[0]
        assert request.url.path == "/api/v1/bot/order-lookup"
        body = request.content
        assert json.loads(body) == {"order_id": 78399, "dni": "12345678", "name": "Juan"}

        timestamp = request.headers["X-Bot-Timestamp"]
        nonce = request.headers["X-Bot-Nonce"]
        canonical = build_canonical_string("POST", "/api/v1/bot/order-lookup", timestamp, nonce, body)
        assert timestamp == "1700000000"
        assert request.headers["X-Bot-Signature"] == sign_request("s3cret", canonical)

    def test_canonical_string_layout(self):
        canonical = build_canonical_string("POST", "/p", "1", "n", b"{}")
        assert canonical == "\n".join(["POST", "/p", "1", "n", hashlib.sha256(b"{}").hexdigest()])

    def test_missing_secret_fails(self):
        client, _ = _client([(200, {})], secret="")
        with pytest.raises(ExternalServiceError):
            _lookup(client)

    def test_secret_defaults_to_settings(self, order_lookup_secret):
        assert OrderLookupClient(base_url="https://api.example.com").hmac_secret == "test-secret"


class TestStatusMapping:
    def test_success(self):
        client, _ = _client([(200, {"order": {"id": "78399", "state": "Cancelado", "total": "1500,50"}})])
        result = _lookup(client)
        assert result.ok is True
        assert result.code == "success"
        assert result.order["state"] == "Cancelado"
        assert result.order["total"] == {"amount": 1500.5, "currency": "ARS"}

    def test_404_is_not_found_or_mismatch(self):
        client, _ = _client([(404, {"message": "not found"})])
        result = _lookup(client)
        assert result.ok is False
        assert result.code == "not_found_or_mismatch"
        assert result.status_code == 404

    def test_422_is_invalid_payload(self):
        client, _ = _client([(422, {})])
        assert _lookup(client).code == "invalid_payload"

    def test_stale_401_retried_once_with_new_nonce(self):
        client, requests = _client([(401, {"reason": "Expired timestamp"}), (200, {"id": 78399})])
        result = _lookup(client)
        assert result.ok is True
        assert len(requests) == 2
        assert requests[0].headers["X-Bot-Nonce"] != requests[1].headers["X-Bot-Nonce"]

    def test_plain_401_not_retried(self):
        client, requests = _client([(401, {"message": "invalid credentials"})])
        assert _lookup(client).code == "unauthorized"
        assert len(requests) == 1

    def test_second_stale_401_gives_up(self):
        client, requests = _client([(401, {"reason": "nonce replay"}), (401, {"reason": "nonce replay"})])
        assert _lookup(client).code == "unauthorized"
        assert len(requests) == 2

    def test_429_backs_off_then_throttled(self):
        sleep = Mock()
        client, requests = _client([(429, {}), (429, {})], sleep=sleep)
        result = _lookup(client)
        assert result.code == "throttled"
        assert len(requests) == 2
        sleep.assert_called_once_with(0.2)

    def test_unexpected_status_raises_without_retry(self):
        client, requests = _client([(400, {"error": "bad request"})])
        with pytest.raises(ExternalServiceError) as exc_info:
            _lookup(client)
        assert exc_info.value.status_code == 400
        assert len(requests) == 1


class TestTransientFailures:
    def test_5xx_then_success(self):
        sleep = Mock()
        client, requests = _client([(503, {}), (200, {"order": {"id": 78399, "state": "Enviado"}})], sleep=sleep)

        result = _lookup(client)

        assert result.ok is True
        assert len(requests) == 2
        sleep.assert_called_once_with(0.2)

    def test_5xx_gives_up(self):
        client, requests = _client([(500, {"error": "boom"}), (500, {"error": "boom"})])

        with pytest.raises(ExternalServiceError) as exc_info:
            _lookup(client)

        assert type(exc_info.value) is ExternalServiceError
        assert exc_info.value.status_code == 500
        assert len(requests) == 2

    def test_timeouts_give_up_after_configured_retries(self):
        sleep = Mock()
        timeouts = [(0, httpx.ReadTimeout("slow")) for _ in range(3)]
        client, requests = _client(timeouts, sleep=sleep, retry_max=2)

        with pytest.raises(ExternalServiceError) as exc_info:
            _lookup(client)

        assert type(exc_info.value) is ExternalServiceError
        assert len(requests) == 3
        assert [call.args[0] for call in sleep.call_args_list] == [0.2, 0.4]

    def test_network_error_then_success(self):
        client, requests = _client([(0, httpx.ConnectError("refused")), (200, {"id": 78399})])
        assert _lookup(client).ok is True
        assert len(requests) == 2

    def test_no_retries_when_disabled(self):
        client, requests = _client([(0, httpx.ReadTimeout("slow"))], retry_max=0)
        with pytest.raises(ExternalServiceError):
            _lookup(client)
        assert len(requests) == 1


class TestParsing:
    def test_payload_drops_blank_identity(self):
        assert build_lookup_payload(5, {"dni": " 1 ", "phone": ""}) == {"order_id": 5, "dni": "1"}

    def test_parse_uses_fallback_id(self):
        order = parse_lookup_order({"state": None}, 42).value
        assert order == {"id": 42, "state": "Sin estado"}

    def test_parse_rejects_non_object(self):
        assert parse_lookup_order([1, 2], 42).ok is False

    def test_stale_markers(self):
        assert is_stale_signature_rejection({"code": "SIGNATURE_MISMATCH"}) is True
        assert is_stale_signature_rejection({"message": "forbidden"}) is False
        assert is_stale_signature_rejection(None) is False
