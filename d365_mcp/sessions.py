import json
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable
from uuid import uuid4

import anyio
import structlog
from anyio.abc import TaskGroup
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Message, Receive, Scope, Send

from .errors import (
    JSONRPC_INTERNAL_ERROR,
    JSONRPC_SESSION_ERROR,
    SessionProtocolError,
    as_jsonrpc_error,
)
from .transport import SESSION_HEADER, SessionHandler, is_initialize_request

logger = structlog.get_logger(__name__)

HandlerFactory = Callable[[str], SessionHandler]


@dataclass
class Session:
    session_id: str
    handler: SessionHandler
    created_at: float
    last_seen: float
    active: int = field(default=0)


def _replay_receive(body: bytes, receive: Receive) -> Receive:
    """Hand the already-read body to the next reader, then defer to ``receive``."""
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


def _parse_body(body: bytes):
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


class SessionRegistry:
    """Binds MCP session ids to live handlers.

    A session exists only after its handler has answered an ``initialize``
    request that arrived without a session id. Every other request must carry
    a known id or is rejected before any handler sees it. Sessions end on an
    explicit ``DELETE``, on the idle sweep, or when :meth:`run` exits.
    """

    def __init__(
        self,
        handler_factory: HandlerFactory,
        idle_timeout: float = 3600.0,
        sweep_interval: float = 60.0,
    ) -> None:
        self._handler_factory = handler_factory
        self._idle_timeout = idle_timeout
        self._sweep_interval = sweep_interval
        self._sessions: dict[str, Session] = {}
        self._pending: set[str] = set()
        self._task_group: TaskGroup | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def now(self) -> float:
        return time.monotonic()

    @asynccontextmanager
    async def run(self) -> AsyncIterator["SessionRegistry"]:
        if self._task_group is not None:
            raise RuntimeError("SessionRegistry is already running")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            if self._idle_timeout > 0:
                tg.start_soon(self._sweeper)
            logger.info("session_registry_started")
            try:
                yield self
            finally:
                for session_id in list(self._sessions):
                    await self.close(session_id)
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.info("session_registry_stopped")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.handle_request(scope, receive, send)

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("SessionRegistry.run() must be entered before handling requests")

        started = False

        async def tracking_send(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self._route(scope, receive, tracking_send)
        except SessionProtocolError as exc:
            logger.info("session_rejected", reason=exc.message)
            if not started:
                await self._error_response(
                    scope, receive, send, exc.status, JSONRPC_SESSION_ERROR, exc.message
                )
        except Exception:
            logger.exception("session_request_failed", response_started=started)
            if not started:
                await self._error_response(
                    scope, receive, send, 500, JSONRPC_INTERNAL_ERROR, "Internal server error."
                )

    async def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        try:
            await session.handler.close()
        except Exception:
            logger.exception("session_close_failed", session_id=session_id)
        logger.info("session_closed", session_id=session_id, remaining=len(self._sessions))
        return True

    async def sweep(self, now: float | None = None) -> list[str]:
        now = self.now() if now is None else now
        expired = [
            session.session_id
            for session in self._sessions.values()
            if session.active == 0 and now - session.last_seen >= self._idle_timeout
        ]
        for session_id in expired:
            logger.info("session_expired", session_id=session_id)
            await self.close(session_id)
        return expired

    async def _sweeper(self) -> None:
        while True:
            await anyio.sleep(self._sweep_interval)
            await self.sweep()

    async def _route(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session_id = request.headers.get(SESSION_HEADER)

        if session_id:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionProtocolError()
            await self._dispatch(session, scope, receive, send)
            return

        body = await request.body() if request.method == "POST" else b""
        if not is_initialize_request(_parse_body(body)):
            raise SessionProtocolError()
        await self._initialize(scope, _replay_receive(body, receive), send)

    async def _dispatch(self, session: Session, scope: Scope, receive: Receive, send: Send) -> None:
        session.active += 1
        session.last_seen = self.now()
        try:
            await session.handler.handle_request(scope, receive, send)
        finally:
            session.active -= 1
            session.last_seen = self.now()
        if scope.get("method") == "DELETE":
            await self.close(session.session_id)

    def _new_session_id(self) -> str:
        # No await between the uniqueness check and the reservation.
        session_id = uuid4().hex
        while session_id in self._sessions or session_id in self._pending:
            session_id = uuid4().hex
        self._pending.add(session_id)
        return session_id

    async def _initialize(self, scope: Scope, receive: Receive, send: Send) -> None:
        session_id = self._new_session_id()
        registered = False
        try:
            handler = self._handler_factory(session_id)
            await handler.start(
                self._task_group, on_crash=lambda: self._handler_crashed(session_id)
            )

            async def registering_send(message: Message) -> None:
                nonlocal registered
                if message["type"] == "http.response.start" and not registered:
                    if message.get("status", 500) < 400 and self._confirms(message, session_id):
                        self._register(session_id, handler)
                        registered = True
                await send(message)

            try:
                await handler.handle_request(scope, receive, registering_send)
            finally:
                if not registered:
                    logger.warning("session_not_initialized", session_id=session_id)
                    await handler.close()
        finally:
            self._pending.discard(session_id)

    def _handler_crashed(self, session_id: str) -> None:
        if self._task_group is not None and session_id in self._sessions:
            logger.warning("session_handler_crashed", session_id=session_id)
            self._task_group.start_soon(self.close, session_id)

    def _confirms(self, message: Message, session_id: str) -> bool:
        expected = session_id.encode("latin-1")
        for name, value in message.get("headers", []):
            if name.lower() == SESSION_HEADER.encode("latin-1") and value == expected:
                return True
        return False

    def _register(self, session_id: str, handler: SessionHandler) -> None:
        if session_id in self._sessions:
            raise RuntimeError(f"Session {session_id} is already registered")
        now = self.now()
        self._sessions[session_id] = Session(
            session_id=session_id, handler=handler, created_at=now, last_seen=now
        )
        logger.info("session_registered", session_id=session_id, total=len(self._sessions))

    async def _error_response(
        self, scope: Scope, receive: Receive, send: Send, status: int, code: int, message: str
    ) -> None:
        response = JSONResponse(as_jsonrpc_error(code, message), status_code=status)
        await response(scope, receive, send)
