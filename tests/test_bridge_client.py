import base64

import httpx
import pytest

from src.adapters.bridge.client import BridgeClient
from src.domain.errors import CapacityError, PermanentValidationError, TransientIOError


def _client(settings, handler):
    sleeps = []
    client = BridgeClient(settings, transport=httpx.MockTransport(handler), sleep=sleeps.append)
    return client, sleeps


def test_fetch_subscriber_uses_versioned_path_and_basic_auth(settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"msisdn": "46700000001", "status": "ACTIVE"})

    client, _ = _client(settings, handler)

    assert client.fetch_subscriber("46700000001") == {"msisdn": "46700000001", "status": "ACTIVE"}
    request = seen[0]
    assert request.url.path == "/api/v1/subscribers/46700000001"
    assert str(request.url).startswith("http://localhost:8080")
    expected = base64.b64encode(b"bridge:secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"


def test_unknown_subscriber_is_none(settings):
    client, _ = _client(settings, lambda request: httpx.Response(404))

    assert client.fetch_subscriber("missing") is None


def test_server_errors_are_retried_with_backoff(make_settings):
    settings = make_settings(bridge_max_retries=3, bridge_retry_delay_seconds=0.5)
    statuses = [503, 502, 200]

    def handler(request):
        return httpx.Response(statuses.pop(0), json={"msisdn": "1"})

    client, sleeps = _client(settings, handler)

    assert client.fetch_subscriber("1") == {"msisdn": "1"}
    assert sleeps == [0.5, 1.0]


def test_persistent_server_error_is_transient(settings):
    client, sleeps = _client(settings, lambda request: httpx.Response(500))

    with pytest.raises(TransientIOError):
        client.fetch_subscriber("1")
    assert len(sleeps) == settings.bridge_max_retries - 1


def test_connection_refused_is_capacity_error(settings):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client, _ = _client(settings, handler)

    with pytest.raises(CapacityError):
        client.fetch_subscriber("1")


def test_timeout_is_transient(settings):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client, _ = _client(settings, handler)

    with pytest.raises(TransientIOError):
        client.health()


def test_bad_credentials_are_capacity_error(settings):
    client, _ = _client(settings, lambda request: httpx.Response(401))

    with pytest.raises(CapacityError):
        client.fetch_subscriber("1")


def test_rejected_request_is_permanent(settings):
    client, _ = _client(settings, lambda request: httpx.Response(400, text="bad msisdn"))

    with pytest.raises(PermanentValidationError):
        client.fetch_subscriber("x")


def test_list_subscribers_pages_until_short_page(settings):
    pages = {"0": [{"msisdn": "1"}, {"msisdn": "2"}], "1": [{"msisdn": "3"}]}

    def handler(request):
        return httpx.Response(200, json={"items": pages[request.url.params["page"]]})

    client, _ = _client(settings, handler)

    assert [s["msisdn"] for s in client.list_subscribers(page_size=2)] == ["1", "2", "3"]


def test_health_checks_health_endpoint(settings):
    client, _ = _client(settings, lambda request: httpx.Response(200 if request.url.path == "/api/health" else 404))

    assert client.health() is True
