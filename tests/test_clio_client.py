"""
Tests for the Clio client transport.

These tests exercise the retry, token refresh, rate limiting and
pagination behaviour of :class:`ClioClient`.  ``requests.request`` is
monkeypatched to simulate Clio's responses without making real network
calls.
"""

import time
from datetime import timedelta

import pytest
import requests

from clio_invoice.clio_client import (
    AuthError,
    ClioAPIError,
    ClioClient,
    ConflictError,
    NetworkError,
    NotFoundError,
    RateLimitExceeded,
    RemoteServerError,
    TokenUpdater,
)
from clio_invoice.constants import CLIO_API_BASE, CLIO_TOKEN_URL
from clio_invoice.utils import utcnow


class DummyResponse:
    def __init__(self, status_code: int, json_data: dict | None = None, headers: dict | None = None) -> None:
        self.status_code = status_code
        self._json_data = json_data
        self.headers = headers or {}

    def json(self) -> dict:
        if self._json_data is None:
            raise ValueError("No JSON body")
        return self._json_data

    @property
    def text(self) -> str:  # for error messages
        return "" if self._json_data is None else str(self._json_data)


class RecordingUpdater(TokenUpdater):
    def __init__(self) -> None:
        self.calls = []

    def update_tokens(self, access_token, refresh_token, expires_at) -> None:
        self.calls.append((access_token, refresh_token, expires_at))


def make_client(**kwargs) -> ClioClient:
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("retry_delay", 0)
    kwargs.setdefault("requests_per_second", 0)
    return ClioClient(kwargs.pop("access_token", "tok"), **kwargs)


def test_retry_on_429_honours_retry_after(monkeypatch):
    """A 429 with Retry-After is retried and the later success returned."""
    calls = {"count": 0}
    sleeps = []

    def fake_request(method, url, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            return DummyResponse(429, headers={"Retry-After": "2"})
        return DummyResponse(200, json_data={"data": {"id": 1}})

    monkeypatch.setattr(requests, "request", fake_request)
    monkeypatch.setattr("clio_invoice.clio_client.time.sleep", sleeps.append)
    clio = make_client()
    assert clio._request("GET", "/bills/1.json") == {"data": {"id": 1}}
    assert calls["count"] == 2
    assert sleeps == [2.0]


def test_persistent_429_raises_rate_limit_exceeded(monkeypatch):
    calls = {"count": 0}

    def fake_request(method, url, **kwargs):
        calls["count"] += 1
        return DummyResponse(429, headers={"Retry-After": "0"})

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    with pytest.raises(RateLimitExceeded):
        clio._request("GET", "/bills.json")
    assert calls["count"] == 4


def test_server_errors_stop_after_max_retries(monkeypatch):
    """An always-500 endpoint is called exactly max_retries + 1 times."""
    calls = {"count": 0}

    def fake_request(method, url, **kwargs):
        calls["count"] += 1
        return DummyResponse(500, json_data={"error": "server"})

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    with pytest.raises(RemoteServerError) as excinfo:
        clio._request("GET", "/bills.json")
    assert calls["count"] == 4
    assert excinfo.value.status_code == 500


def test_server_error_backoff_doubles(monkeypatch):
    sleeps = []

    def fake_request(method, url, **kwargs):
        return DummyResponse(503)

    monkeypatch.setattr(requests, "request", fake_request)
    monkeypatch.setattr("clio_invoice.clio_client.time.sleep", sleeps.append)
    clio = make_client(retry_delay=0.5)
    with pytest.raises(RemoteServerError):
        clio._request("GET", "/bills.json")
    assert sleeps == [0.5, 1.0, 2.0]


def test_network_errors_are_retried_then_raised(monkeypatch):
    calls = {"count": 0}

    def fake_request(method, url, **kwargs):
        calls["count"] += 1
        raise requests.ConnectionError("connection reset")

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    with pytest.raises(NetworkError):
        clio._request("GET", "/bills.json")
    assert calls["count"] == 4


def test_network_error_then_success(monkeypatch):
    calls = {"count": 0}

    def fake_request(method, url, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise requests.Timeout("read timed out")
        return DummyResponse(200, json_data={"data": []})

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    assert clio._request("GET", "/bills.json") == {"data": []}


@pytest.mark.parametrize(
    "status, error",
    [(404, NotFoundError), (409, ConflictError), (412, ConflictError), (422, ClioAPIError)],
)
def test_client_errors_are_not_retried(monkeypatch, status, error):
    calls = {"count": 0}

    def fake_request(method, url, **kwargs):
        calls["count"] += 1
        return DummyResponse(status, json_data={"error": {"message": "nope"}})

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    with pytest.raises(error) as excinfo:
        clio._request("GET", "/bills/9.json")
    assert calls["count"] == 1
    assert excinfo.value.status_code == status
    assert "nope" in excinfo.value.body


def test_missing_access_token_fails_without_network(monkeypatch):
    def fake_request(method, url, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client(access_token=None)
    with pytest.raises(AuthError):
        clio.get_bill(1)


def test_204_returns_empty_dict(monkeypatch):
    monkeypatch.setattr(requests, "request", lambda method, url, **kwargs: DummyResponse(204))
    clio = make_client()
    assert clio._request("DELETE", "/activities/5.json") == {}


def test_proactive_refresh_before_request(monkeypatch):
    """A token one minute from expiry is refreshed before the API call."""
    seen = []
    old_expiry = utcnow() + timedelta(minutes=1)

    def fake_request(method, url, **kwargs):
        seen.append((method, url, kwargs))
        if url == CLIO_TOKEN_URL:
            assert kwargs["data"]["grant_type"] == "refresh_token"
            assert kwargs["data"]["refresh_token"] == "refresh-1"
            return DummyResponse(
                200, json_data={"access_token": "tok-2", "refresh_token": "refresh-2", "expires_in": 3600}
            )
        return DummyResponse(200, json_data={"data": {"id": 1}})

    monkeypatch.setattr(requests, "request", fake_request)
    updater = RecordingUpdater()
    clio = make_client(refresh_token="refresh-1", token_updater=updater, token_expires_at=old_expiry)
    clio.get_bill(1)

    assert [url for _, url, _ in seen] == [CLIO_TOKEN_URL, f"{CLIO_API_BASE}/bills/1.json"]
    assert seen[1][2]["headers"]["Authorization"] == "Bearer tok-2"
    assert len(updater.calls) == 1
    access, refresh, expires_at = updater.calls[0]
    assert (access, refresh) == ("tok-2", "refresh-2")
    assert expires_at > old_expiry
    assert clio.token_expires_at == expires_at


def test_refresh_without_expires_in_uses_default_lifetime(monkeypatch):
    """A token response without expires_in must not leave the token already expired."""
    urls = []
    old_expiry = utcnow() + timedelta(minutes=1)

    def fake_request(method, url, **kwargs):
        urls.append(url)
        if url == CLIO_TOKEN_URL:
            return DummyResponse(200, json_data={"access_token": "tok-2", "refresh_token": "refresh-2"})
        return DummyResponse(200, json_data={"data": {"id": 1}})

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client(refresh_token="refresh-1", token_expires_at=old_expiry)
    clio.get_bill(1)
    clio.get_bill(2)

    assert clio.token_expires_at > utcnow() + timedelta(days=1)
    assert not clio.is_token_expired()
    assert urls.count(CLIO_TOKEN_URL) == 1


def test_no_refresh_when_token_is_fresh(monkeypatch):
    urls = []

    def fake_request(method, url, **kwargs):
        urls.append(url)
        return DummyResponse(200, json_data={"data": {}})

    monkeypatch.setattr(requests, "request", fake_request)
    updater = RecordingUpdater()
    clio = make_client(
        refresh_token="refresh-1", token_updater=updater, token_expires_at=utcnow() + timedelta(hours=1)
    )
    clio.get_current_user()
    assert urls == [f"{CLIO_API_BASE}/users/who_am_i.json"]
    assert updater.calls == []


def test_401_triggers_refresh_and_single_retry(monkeypatch):
    auth_headers = []

    def fake_request(method, url, **kwargs):
        if url == CLIO_TOKEN_URL:
            return DummyResponse(200, json_data={"access_token": "tok-2", "expires_in": 3600})
        auth_headers.append(kwargs["headers"]["Authorization"])
        if len(auth_headers) == 1:
            return DummyResponse(401, json_data={"error": "expired"})
        return DummyResponse(200, json_data={"data": {"id": 7}})

    monkeypatch.setattr(requests, "request", fake_request)
    updater = RecordingUpdater()
    clio = make_client(refresh_token="refresh-1", token_updater=updater)
    assert clio.get_bill(7) == {"data": {"id": 7}}
    assert auth_headers == ["Bearer tok", "Bearer tok-2"]
    assert len(updater.calls) == 1
    # Clio did not rotate the refresh token, so the old one is kept
    assert clio.refresh_token == "refresh-1"


def test_401_without_refresh_token_raises_auth_error(monkeypatch):
    calls = {"count": 0}

    def fake_request(method, url, **kwargs):
        calls["count"] += 1
        return DummyResponse(401)

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    with pytest.raises(AuthError):
        clio.get_bill(1)
    assert calls["count"] == 1


def test_failed_refresh_raises_auth_error(monkeypatch):
    def fake_request(method, url, **kwargs):
        if url == CLIO_TOKEN_URL:
            return DummyResponse(400, json_data={"error": "invalid_grant"})
        return DummyResponse(401)

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client(refresh_token="revoked")
    with pytest.raises(AuthError) as excinfo:
        clio.get_bill(1)
    assert "invalid_grant" in str(excinfo.value)


def test_exchange_code_for_token_posts_authorization_code(monkeypatch):
    posted = {}

    def fake_request(method, url, **kwargs):
        posted.update(kwargs["data"])
        return DummyResponse(200, json_data={"access_token": "a", "refresh_token": "r", "expires_in": 60})

    monkeypatch.setattr(requests, "request", fake_request)
    tokens = ClioClient.exchange_code_for_token("auth-code")
    assert tokens["access_token"] == "a"
    assert posted["grant_type"] == "authorization_code"
    assert posted["code"] == "auth-code"
    assert posted["client_id"] == "client-id"


def test_authorization_url_includes_state():
    url = ClioClient.authorization_url(state="xyz")
    assert url.startswith("https://app.clio.com/oauth/authorize?")
    assert "response_type=code" in url
    assert "state=xyz" in url


def test_fetch_all_pages_follows_page_tokens(monkeypatch):
    """Pages of 10, 10 and 4 items are concatenated in order."""
    pages = {
        None: ([{"id": i} for i in range(0, 10)], "p2"),
        "p2": ([{"id": i} for i in range(10, 20)], "p3"),
        "p3": ([{"id": i} for i in range(20, 24)], None),
    }
    tokens = []

    def fake_request(method, url, **kwargs):
        token = kwargs["params"].get("page_token")
        tokens.append(token)
        data, next_token = pages[token]
        meta = {"paging": {"next": next_token}} if next_token else {"paging": {}}
        return DummyResponse(200, json_data={"data": data, "meta": meta})

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    items = clio.get_all_bills_awaiting_approval()
    assert [item["id"] for item in items] == list(range(24))
    assert tokens == [None, "p2", "p3"]


def test_fetch_all_pages_follows_full_url_cursor(monkeypatch):
    next_url = f"{CLIO_API_BASE}/users.json?page_token=abc"
    requested = []

    def fake_request(method, url, **kwargs):
        requested.append((url, kwargs["params"]))
        if url == next_url:
            return DummyResponse(200, json_data={"data": [{"id": 2}]})
        return DummyResponse(200, json_data={"data": [{"id": 1}], "meta": {"paging": {"next": next_url}}})

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    assert clio.get_all_users(enabled=True) == [{"id": 1}, {"id": 2}]
    assert requested[0][1]["enabled"] == "true"
    assert requested[1] == (next_url, None)


def test_fetch_all_pages_empty_first_page(monkeypatch):
    monkeypatch.setattr(
        requests, "request", lambda method, url, **kwargs: DummyResponse(200, json_data={"data": []})
    )
    assert make_client().get_all_bill_line_items(3) == []


def test_rate_limit_spaces_requests(monkeypatch):
    """N requests at R per second take at least (N - 1) / R seconds."""
    monkeypatch.setattr(requests, "request", lambda method, url, **kwargs: DummyResponse(200, json_data={}))
    clio = make_client(requests_per_second=20)
    start = time.monotonic()
    for _ in range(5):
        clio._request("GET", "/users/who_am_i.json")
    elapsed = time.monotonic() - start
    assert elapsed >= 4 * 0.05 - 1e-3


def test_writes_send_if_match_and_wire_values(monkeypatch):
    from decimal import Decimal

    sent = []

    def fake_request(method, url, **kwargs):
        sent.append((method, url, kwargs))
        return DummyResponse(200, json_data={"data": {"id": 5}})

    monkeypatch.setattr(requests, "request", fake_request)
    clio = make_client()
    clio.update_bill_state(11, "awaiting_payment", "etag-11")
    clio.update_activity(5, {"quantity": Decimal("1.50"), "rate": Decimal("300")}, "etag-5")
    clio.hold_activity(5, "etag-6")

    method, url, kwargs = sent[0]
    assert (method, url) == ("PATCH", f"{CLIO_API_BASE}/bills/11.json")
    assert kwargs["headers"]["If-Match"] == "etag-11"
    assert kwargs["json"] == {"data": {"state": "awaiting_payment"}}
    assert sent[1][2]["json"] == {"data": {"quantity": 1.5, "rate": 300}}
    assert sent[2][2]["json"] == {"data": {"bill": None}}
    assert sent[2][2]["headers"]["If-Match"] == "etag-6"


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("CLIO_API_BASE", "https://eu.app.clio.com/api/v4/")
    monkeypatch.setenv("CLIO_MAX_RETRIES", "5")
    monkeypatch.setenv("CLIO_REQUESTS_PER_SECOND", "2")
    clio = ClioClient("tok")
    assert clio.base_url == "https://eu.app.clio.com/api/v4"
    assert clio.max_retries == 5
    assert clio.min_request_interval == 0.5
    # explicit arguments win over the environment
    assert ClioClient("tok", max_retries=1).max_retries == 1
