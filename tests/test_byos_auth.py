import io
import json
import urllib.error

import pytest

import byos_auth
from byos_auth import (
    ByosAuthError,
    HttpResponse,
    get_base_url,
    get_valid_access_token,
    is_token_valid,
    login,
    send_request,
)
from models import ByosAuthConfig

WEBHOOK = "https://byos.example.com/api/screens"
MINUTE_MS = 60 * 1000
NOW = 1_700_000_000_000


def token_response(access="new-access", refresh="new-refresh", status=200):
    return HttpResponse(status, "OK", json.dumps({"access_token": access, "refresh_token": refresh}).encode())


def auth(age_ms=0, **overrides):
    values = dict(enabled=True, access_token="old-access", refresh_token="old-refresh", obtained_at=NOW - age_ms)
    values.update(overrides)
    return ByosAuthConfig(**values)


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, method="GET", headers=None, body=None, timeout=None):
        self.calls.append({"url": url, "method": method, "headers": headers or {}, "body": body})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeUrlopenResponse:
    def __init__(self, status, body):
        self.status = status
        self.reason = "OK"
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_get_base_url():
    assert get_base_url("https://byos.example.com:2300/api/screens?x=1") == "https://byos.example.com:2300"


def test_token_validity_window():
    assert is_token_valid(auth(age_ms=24 * MINUTE_MS), now_ms=NOW)
    assert not is_token_valid(auth(age_ms=25 * MINUTE_MS), now_ms=NOW)
    assert not is_token_valid(auth(obtained_at=None), now_ms=NOW)


def test_fresh_token_is_returned_without_network(monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(byos_auth, "send_request", recorder)
    assert get_valid_access_token(WEBHOOK, auth(age_ms=5 * MINUTE_MS), now_ms=NOW) == "old-access"
    assert recorder.calls == []


def test_stale_token_is_refreshed_and_persisted(monkeypatch):
    recorder = Recorder(token_response())
    monkeypatch.setattr(byos_auth, "send_request", recorder)
    refreshed = []

    token = get_valid_access_token(WEBHOOK, auth(age_ms=30 * MINUTE_MS), on_refresh=refreshed.append, now_ms=NOW)

    assert token == "new-access"
    assert refreshed[0].refresh_token == "new-refresh"
    call = recorder.calls[0]
    assert call["url"] == "https://byos.example.com/api/jwt"
    assert call["method"] == "POST"
    assert call["headers"]["Authorization"] == "old-access"
    assert json.loads(call["body"]) == {"refresh_token": "old-refresh"}


def test_missing_tokens_return_none(monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(byos_auth, "send_request", recorder)
    assert get_valid_access_token(WEBHOOK, auth(refresh_token=None), now_ms=NOW) is None
    assert get_valid_access_token(WEBHOOK, ByosAuthConfig(enabled=True), now_ms=NOW) is None
    assert recorder.calls == []


@pytest.mark.parametrize("failure", [
    HttpResponse(401, "Unauthorized", b"{}"),
    HttpResponse(200, "OK", b"not json"),
    HttpResponse(200, "OK", b'{"access_token": "only-access"}'),
    urllib.error.URLError("connection refused"),
])
def test_refresh_failure_returns_none(monkeypatch, failure):
    monkeypatch.setattr(byos_auth, "send_request", Recorder(failure))
    refreshed = []
    assert get_valid_access_token(WEBHOOK, auth(age_ms=30 * MINUTE_MS), on_refresh=refreshed.append,
                                  now_ms=NOW) is None
    assert refreshed == []


def test_failing_token_store_returns_none(monkeypatch):
    monkeypatch.setattr(byos_auth, "send_request", Recorder(token_response()))

    def store_tokens(tokens):
        raise OSError("disk full")

    assert get_valid_access_token(WEBHOOK, auth(age_ms=30 * MINUTE_MS), on_refresh=store_tokens,
                                  now_ms=NOW) is None


def test_login_returns_tokens(monkeypatch):
    recorder = Recorder(token_response("a1", "r1"))
    monkeypatch.setattr(byos_auth, "send_request", recorder)

    tokens = login("https://byos.example.com", "user@example.com", "hunter2")

    assert (tokens.access_token, tokens.refresh_token) == ("a1", "r1")
    assert recorder.calls[0]["url"] == "https://byos.example.com/login"
    assert json.loads(recorder.calls[0]["body"]) == {"login": "user@example.com", "password": "hunter2"}


@pytest.mark.parametrize("failure", [
    HttpResponse(401, "Unauthorized", b"bad credentials"),
    HttpResponse(200, "OK", b"{}"),
    urllib.error.URLError("timed out"),
])
def test_login_failures_raise(monkeypatch, failure):
    monkeypatch.setattr(byos_auth, "send_request", Recorder(failure))
    with pytest.raises(ByosAuthError):
        login("https://byos.example.com", "user", "pw")


def test_send_request_wraps_success_and_http_errors(monkeypatch):
    seen = []

    def fake_urlopen(request, timeout=None):
        seen.append(request)
        if request.get_method() == "DELETE":
            raise urllib.error.HTTPError(request.full_url, 404, "Not Found", {}, io.BytesIO(b"gone"))
        return FakeUrlopenResponse(201, b'{"ok": true}')

    monkeypatch.setattr(byos_auth.urllib.request, "urlopen", fake_urlopen)

    created = send_request("https://x.example.com/a", method="POST", headers={"X-Key": "1"}, body=b"{}")
    assert created.ok and created.json() == {"ok": True}
    assert seen[0].get_header("X-key") == "1"

    missing = send_request("https://x.example.com/a/1", method="DELETE")
    assert not missing.ok
    assert (missing.status, missing.text) == (404, "gone")
