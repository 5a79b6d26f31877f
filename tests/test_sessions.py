import json
import logging

import anyio
import pytest
from starlette.types import Message

from sessions import SessionManager, widen_accept

pytestmark = pytest.mark.anyio

INITIALIZE = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "1.0.0"},
    },
}


class FakeService:
    refreshable = True

    def __init__(self, token):
        self.token = token
        self.closed = False

    async def aclose(self):
        self.closed = True


def http_scope(headers=(), method="POST"):
    return {
        "type": "http",
        "method": method,
        "path": "/",
        "headers": [
            (b"content-type", b"application/json"),
            (b"accept", b"application/json"),
            *headers,
        ],
    }


async def call(manager, scope, body=None):
    sent: list[Message] = []
    calls = 0

    async def receive():
        nonlocal calls
        calls += 1
        if calls == 1:
            payload = b"" if body is None else json.dumps(body).encode()
            return {"type": "http.request", "body": payload, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message: Message):
        sent.append(message)

    await manager.handle_request(scope, receive, send)
    return sent


def status_and_headers(sent):
    start = next(m for m in sent if m["type"] == "http.response.start")
    return start["status"], dict(start.get("headers", []))


def test_widen_accept():
    scope = widen_accept({"headers": [(b"accept", b"application/json")]})
    assert scope["headers"] == [(b"accept", b"application/json, text/event-stream")]

    both = {"headers": [(b"accept", b"application/json, text/event-stream")]}
    assert widen_accept(both) is both

    assert widen_accept({"headers": []}) == {"headers": []}


async def test_requires_running_manager():
    manager = SessionManager(FakeService)

    with pytest.raises(RuntimeError):
        await call(manager, http_scope(), INITIALIZE)


async def test_unknown_session_id_is_404():
    manager = SessionManager(FakeService, json_response=True)

    async with manager.run():
        sent = await call(manager, http_scope([(b"mcp-session-id", b"stale")]), INITIALIZE)

    status, _ = status_and_headers(sent)
    assert status == 404
    assert len(manager) == 0


async def test_initialize_provisions_session_from_bearer():
    services = []

    def factory(token):
        service = FakeService(token)
        services.append(service)
        return service

    manager = SessionManager(factory, json_response=True)

    async with manager.run():
        sent = await call(manager, http_scope([(b"authorization", b"Bearer user-token")]), INITIALIZE)

        status, headers = status_and_headers(sent)
        assert status == 200
        session_id = headers[b"mcp-session-id"].decode()
        session = manager.get(session_id)
        assert session.bearer_token == "user-token"
        assert session.service is services[0]
        assert services[0].token == "user-token"

        body = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
        assert json.loads(body)["result"]["serverInfo"]["name"] == "google-tasks-mcp"

        assert await manager.close_session(session_id)
        assert manager.get(session_id) is None
        assert services[0].closed

    assert len(manager) == 0


async def test_shutdown_releases_sessions():
    services = []

    def factory(token):
        services.append(FakeService(token))
        return services[-1]

    manager = SessionManager(factory, json_response=True)

    async with manager.run():
        await call(manager, http_scope(), INITIALIZE)
        assert len(manager) == 1
        assert services[0].token is None

    assert len(manager) == 0
    assert services[0].closed


def warnings_from(caplog):
    return [r for r in caplog.records if r.name == "sessions" and r.levelno >= logging.WARNING]


async def open_session(manager, bearer=b"user-token"):
    sent = await call(manager, http_scope([(b"authorization", b"Bearer " + bearer)]), INITIALIZE)
    status, headers = status_and_headers(sent)
    assert status == 200
    return headers[b"mcp-session-id"]


async def test_delete_closes_session():
    services = []

    def factory(token):
        services.append(FakeService(token))
        return services[-1]

    manager = SessionManager(factory, json_response=True)

    async with manager.run():
        session_id = await open_session(manager)
        headers = [(b"authorization", b"Bearer user-token"), (b"mcp-session-id", session_id)]

        sent = await call(manager, http_scope(headers, method="DELETE"))
        status, _ = status_and_headers(sent)
        assert status == 200

        with anyio.fail_after(5):
            while len(manager):
                await anyio.sleep(0.01)
        assert services[0].closed

        sent = await call(manager, http_scope(headers), INITIALIZE)
        status, _ = status_and_headers(sent)
        assert status == 404


async def test_foreign_bearer_on_session_is_logged(caplog):
    manager = SessionManager(FakeService, json_response=True)
    initialized = {"jsonrpc": "2.0", "method": "notifications/initialized"}

    async with manager.run():
        session_id = await open_session(manager)

        caplog.clear()
        with caplog.at_level(logging.WARNING, logger="sessions"):
            headers = [(b"authorization", b"Bearer user-token"), (b"mcp-session-id", session_id)]
            await call(manager, http_scope(headers), initialized)
            assert not warnings_from(caplog)

            headers = [(b"authorization", b"Bearer other-token"), (b"mcp-session-id", session_id)]
            sent = await call(manager, http_scope(headers), initialized)

    status, _ = status_and_headers(sent)
    assert status == 202
    [record] = warnings_from(caplog)
    message = record.getMessage()
    assert session_id.decode() in message
    assert "other-token" not in message
