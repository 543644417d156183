import httpx
import pytest

from botfleet.models.bot import BotState, BotStatus
from botfleet.runner import bot_client
from botfleet.runner.bot_client import BotAPIClient, BotAPIError, api_credentials, call_with_fallback


class FakeClient:
    """Stands in for BotAPIClient; only URLs in `reachable` answer."""

    reachable = set()
    created = []

    def __init__(self, base_url, username, password, timeout=30.0):
        self.base_url = base_url
        self.timeout = timeout
        FakeClient.created.append((base_url, timeout))

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        pass

    def ping(self):
        if self.base_url not in self.reachable:
            raise httpx.ConnectError("connection refused")
        return {"status": "pong", "via": self.base_url}


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.reachable = set()
    FakeClient.created = []
    monkeypatch.setattr(bot_client, "BotAPIClient", FakeClient)
    return FakeClient


def status(ip="172.18.0.5", host_port=49153):
    return BotStatus(bot_id="bot-1", status=BotState.RUNNING, ip_address=ip, host_port=host_port)


def test_direct_address_is_tried_first(fake_client):
    fake_client.reachable = {"http://172.18.0.5:8080"}
    result = call_with_fallback(status(), "u", "p", lambda c: c.ping(), direct_timeout=2.0)
    assert result["via"] == "http://172.18.0.5:8080"
    assert fake_client.created == [("http://172.18.0.5:8080", 2.0)]


def test_falls_back_to_host_port(fake_client):
    fake_client.reachable = {"http://localhost:49153"}
    result = call_with_fallback(status(), "u", "p", lambda c: c.ping(), timeout=10.0)
    assert result["via"] == "http://localhost:49153"
    assert [url for url, _ in fake_client.created] == ["http://172.18.0.5:8080", "http://localhost:49153"]


def test_both_endpoints_fail(fake_client):
    with pytest.raises(BotAPIError, match="unreachable"):
        call_with_fallback(status(), "u", "p", lambda c: c.ping())


def test_no_endpoint_known(fake_client):
    with pytest.raises(BotAPIError, match="no accessible endpoint for bot bot-1"):
        call_with_fallback(status(ip=None, host_port=None), "u", "p", lambda c: c.ping())


def test_api_credentials():
    assert api_credentials({"api_server": {"username": "a", "password": "b", "listen_port": 8081}}) == ("a", "b", 8081)
    with pytest.raises(BotAPIError):
        api_credentials({})


def test_client_uses_basic_auth_and_api_prefix():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"status": "pong"})

    client = BotAPIClient("http://bot:8080/", "user", "pass")
    client.client = httpx.Client(base_url=client.base_url, auth=("user", "pass"), transport=httpx.MockTransport(handler))
    with client:
        assert client.ping() == {"status": "pong"}
    assert seen["path"] == "/api/v1/ping"
    assert seen["auth"].startswith("Basic ")


def test_client_raises_on_error_status():
    client = BotAPIClient("http://bot:8080", "user", "pass")
    client.client = httpx.Client(base_url=client.base_url,
                                 transport=httpx.MockTransport(lambda r: httpx.Response(401)))
    with client, pytest.raises(BotAPIError, match="HTTP 401"):
        client.profit()
