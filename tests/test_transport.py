import asyncio

import pytest
import requests

from conftest import API, FakeResponse, FakeSend, RotatingAuthServer
from govision.credentials import CredentialStore
from govision.errors import SessionExpired, TransportError
from govision.transport import AuthenticatedTransport, parse_json_safe

NEW_TOKENS = {"access_token": "acc-2", "refresh_token": "ref-2"}


def _auth(call):
    return call[2]["headers"].get("Authorization")


def test_attaches_bearer_token(config, credentials):
    send = FakeSend(lambda m, u, **kw: FakeResponse(200, {"ok": True}))
    transport = AuthenticatedTransport(config, credentials, send=send)

    response = asyncio.run(transport.request("GET", "/jobs/abc"))

    assert response.status_code == 200
    method, url, kwargs = send.calls[0]
    assert (method, url) == ("GET", f"{API}/jobs/abc")
    assert kwargs["headers"] == {"Authorization": "Bearer acc-1"}
    assert kwargs["timeout"] == config.request_timeout


def test_no_header_when_logged_out(config):
    send = FakeSend(lambda m, u, **kw: FakeResponse(200, {}))
    transport = AuthenticatedTransport(config, CredentialStore(), send=send)

    asyncio.run(transport.request("GET", "/jobs/abc"))

    assert _auth(send.calls[0]) is None


def test_non_401_errors_pass_through(config, credentials):
    send = FakeSend(lambda m, u, **kw: FakeResponse(500, {"message": "boom"}))
    transport = AuthenticatedTransport(config, credentials, send=send)

    response = asyncio.run(transport.request("GET", "/jobs/abc"))

    assert response.status_code == 500
    assert len(send.calls) == 1
    assert credentials.get().access_token == "acc-1"


def test_401_refreshes_and_replays_once(config, credentials):
    def handler(method, url, **kw):
        if url.endswith("/auth/refresh"):
            assert kw["json"] == {"refresh_token": "ref-1"}
            return FakeResponse(200, NEW_TOKENS)
        if kw["headers"].get("Authorization") == "Bearer acc-2":
            return FakeResponse(200, {"status": "queued"})
        return FakeResponse(401, {"message": "token expired"})

    send = FakeSend(handler)
    transport = AuthenticatedTransport(config, credentials, send=send)

    response = asyncio.run(transport.request("GET", "/jobs/abc"))

    assert response.status_code == 200
    assert send.paths() == ["/jobs/abc", "/auth/refresh", "/jobs/abc"]
    assert _auth(send.calls[2]) == "Bearer acc-2"
    assert credentials.get().access_token == "acc-2"
    assert credentials.identity() == "me@example.com"


def test_replay_is_returned_even_if_still_401(config, credentials):
    def handler(method, url, **kw):
        if url.endswith("/auth/refresh"):
            return FakeResponse(200, NEW_TOKENS)
        return FakeResponse(401, {"message": "nope"})

    send = FakeSend(handler)
    transport = AuthenticatedTransport(config, credentials, send=send)

    response = asyncio.run(transport.request("GET", "/jobs/abc"))

    assert response.status_code == 401
    assert send.paths().count("/auth/refresh") == 1
    assert len(send.calls) == 3


def test_refresh_rejected_clears_session(config, credentials):
    ended = []

    def handler(method, url, **kw):
        if url.endswith("/auth/refresh"):
            return FakeResponse(400, {"message": "invalid refresh token"})
        return FakeResponse(401, {})

    send = FakeSend(handler)
    transport = AuthenticatedTransport(config, credentials, send=send,
                                       on_session_end=lambda: ended.append(True))

    with pytest.raises(SessionExpired):
        asyncio.run(transport.request("POST", "/image/upload", files={"file": ("a.png", b"x", "image/png")}))

    assert credentials.get() is None
    assert ended == [True]
    assert send.paths() == ["/image/upload", "/auth/refresh"]


@pytest.mark.parametrize("refresh_result", [
    FakeResponse(200, {"access_token": "only-access"}),
    FakeResponse(200, b"<html>", content_type="text/html"),
    requests.ConnectionError("refused"),
])
def test_refresh_failures_end_session(config, credentials, refresh_result):
    def handler(method, url, **kw):
        if url.endswith("/auth/refresh"):
            return refresh_result
        return FakeResponse(401, {})

    transport = AuthenticatedTransport(config, credentials, send=FakeSend(handler))

    with pytest.raises(SessionExpired):
        asyncio.run(transport.request("GET", "/jobs/abc"))
    assert credentials.get() is None


def test_401_without_refresh_token_skips_refresh(config):
    send = FakeSend(lambda m, u, **kw: FakeResponse(401, {}))
    transport = AuthenticatedTransport(config, CredentialStore(), send=send)

    with pytest.raises(SessionExpired):
        asyncio.run(transport.request("GET", "/jobs/abc"))
    assert send.paths() == ["/jobs/abc"]


def test_network_error_becomes_transport_error(config, credentials):
    send = FakeSend(lambda m, u, **kw: requests.Timeout("slow"))
    transport = AuthenticatedTransport(config, credentials, send=send)

    with pytest.raises(TransportError):
        asyncio.run(transport.request("GET", "/jobs/abc"))
    assert credentials.get() is not None


def test_parse_json_safe():
    assert parse_json_safe(FakeResponse(200, {"a": 1})) == {"a": 1}
    assert parse_json_safe(FakeResponse(200, b"{bad")) is None
    assert parse_json_safe(FakeResponse(200, [1, 2])) is None
    assert parse_json_safe(FakeResponse(200, {"a": 1}, content_type="text/plain")) is None
    assert parse_json_safe(FakeResponse(200, {"a": 1}, content_type=None)) is None


def test_concurrent_401s_share_one_refresh(config, credentials):
    server = RotatingAuthServer()
    ended = []
    transport = AuthenticatedTransport(config, credentials, send=FakeSend(server),
                                       on_session_end=lambda: ended.append(True))

    async def both():
        return await asyncio.gather(
            transport.request("GET", "/jobs/a"),
            transport.request("GET", "/jobs/b"),
        )

    responses = asyncio.run(both())

    assert [r.status_code for r in responses] == [200, 200]
    assert server.refreshes == 1
    assert credentials.get().access_token == "acc-2"
    assert credentials.get().refresh_token == "ref-2"
    assert ended == []
