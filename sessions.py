"""Streamable HTTP session management for the MCP endpoint.

Every MCP session owns one transport, one FastMCP server and one Google
Tasks client built from the bearer token that opened it. Sessions live in
memory only; after a restart clients get 404 for their old session id and
re-initialize.

    no session --(first request, no id)--> provisioning --> active
    active --(DELETE / transport closed / crash)--> closed
"""

import contextlib
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import AsyncIterator, Callable, Optional
from uuid import uuid4

import anyio
from anyio.abc import TaskStatus
from fastmcp import FastMCP
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from google_tasks import TasksService
from logging_config import redact
from oauth.middleware import bearer_token
from tools import create_mcp_server

logger = logging.getLogger(__name__)


@dataclass
class Session:
    session_id: str
    transport: StreamableHTTPServerTransport
    server: FastMCP
    service: TasksService
    bearer_token: Optional[str] = None


def widen_accept(scope: Scope) -> Scope:
    """Add text/event-stream to an Accept header that only lists JSON.

    Some clients send Accept: application/json alone, which the transport
    would otherwise refuse.
    """
    headers = list(scope.get("headers", []))
    for i, (name, value) in enumerate(headers):
        if name.lower() == b"accept":
            if b"application/json" in value and b"text/event-stream" not in value:
                headers[i] = (name, value + b", text/event-stream")
                return {**scope, "headers": headers}
            return scope
    return scope


class SessionManager:
    """Owns the session map and the task group running each session's server.

    Args:
        service_factory: builds the Tasks client for a new session from its
            bearer token (None when the request carried none).
        server_factory: builds the MCP server around that client.
        json_response: answer POSTs with JSON instead of SSE streams.
    """

    def __init__(
        self,
        service_factory: Callable[[Optional[str]], TasksService],
        server_factory: Callable[[TasksService], FastMCP] = create_mcp_server,
        json_response: bool = False,
    ):
        self.service_factory = service_factory
        self.server_factory = server_factory
        self.json_response = json_response

        self._sessions: dict[str, Session] = {}
        self._lock = anyio.Lock()
        self._task_group = None

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Run the task group that hosts session servers; use in the app lifespan."""
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("[SESSION] Session manager started")
            try:
                yield
            finally:
                logger.info("[SESSION] Session manager shutting down")
                tg.cancel_scope.cancel()
                self._task_group = None
                for session in list(self._sessions.values()):
                    with anyio.CancelScope(shield=True):
                        await self._release(session)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.handle_request(scope, receive, send)

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("Session manager is not running. Use run() in the app lifespan.")

        scope = widen_accept(scope)
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if session_id is not None:
            session = self._sessions.get(session_id)
            if session is None:
                logger.info(f"[SESSION] Unknown session id {redact(session_id)}, client must re-initialize")
                response = Response("Session not found", status_code=HTTPStatus.NOT_FOUND)
                await response(scope, receive, send)
                return
            token = bearer_token(request.headers.get("authorization", "")) or None
            if token != session.bearer_token:
                # session credentials stay bound to the bearer that opened it
                logger.warning(
                    f"[AUTH] Bearer {redact(token)} differs from the one that opened session "
                    f"{session.session_id} ({redact(session.bearer_token)})"
                )
            await session.transport.handle_request(scope, receive, send)
            return

        token = bearer_token(request.headers.get("authorization", "")) or None
        session = await self._provision(token)
        await session.transport.handle_request(scope, receive, send)

    async def _provision(self, token: Optional[str]) -> Session:
        service = self.service_factory(token)
        server = self.server_factory(service)
        transport = StreamableHTTPServerTransport(
            mcp_session_id=uuid4().hex,
            is_json_response_enabled=self.json_response,
        )
        session = Session(
            session_id=transport.mcp_session_id,
            transport=transport,
            server=server,
            service=service,
            bearer_token=token,
        )
        async with self._lock:
            self._sessions[session.session_id] = session
        await self._task_group.start(self._run_session, session)
        mode = "refreshable" if service.refreshable else "access-token-only"
        logger.info(f"[SESSION] Created session {session.session_id} ({mode})")
        return session

    async def _run_session(
        self, session: Session, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED
    ) -> None:
        try:
            async with session.transport.connect() as (read_stream, write_stream):
                task_status.started()
                low_level = session.server._mcp_server
                await low_level.run(
                    read_stream, write_stream, low_level.create_initialization_options()
                )
        except Exception:
            logger.exception(f"[SESSION] Session {session.session_id} crashed")
        finally:
            with anyio.CancelScope(shield=True):
                await self._release(session)

    async def _release(self, session: Session) -> None:
        async with self._lock:
            if self._sessions.get(session.session_id) is not session:
                return
            del self._sessions[session.session_id]
        if not session.transport.is_terminated:
            await session.transport.terminate()
        await session.service.aclose()
        logger.info(f"[SESSION] Closed session {session.session_id}")

    async def close_session(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        await self._release(session)
        return True
