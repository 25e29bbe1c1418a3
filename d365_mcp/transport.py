from typing import Any, Callable, Protocol

import anyio
import structlog
from anyio.abc import TaskGroup
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from pydantic import ValidationError
from starlette.types import Receive, Scope, Send

logger = structlog.get_logger(__name__)

SESSION_HEADER = MCP_SESSION_ID_HEADER


def is_initialize_request(body: Any) -> bool:
    if not isinstance(body, dict) or body.get("method") != "initialize":
        return False
    try:
        types.JSONRPCRequest.model_validate(body)
        types.InitializeRequestParams.model_validate(body.get("params") or {})
    except ValidationError:
        return False
    return True


async def notify_safely(ctx: Any, message: str, level: str = "info") -> None:
    """Send a progress message to the client; delivery failures never propagate."""
    if ctx is None:
        return
    try:
        await ctx.log(level, message)
    except Exception as exc:
        logger.debug("notification_failed", error=str(exc))


class SessionHandler(Protocol):
    session_id: str

    async def start(
        self, task_group: TaskGroup, on_crash: Callable[[], None] | None = None
    ) -> None: ...

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None: ...

    async def close(self) -> None: ...


class McpSessionHandler:
    """One MCP server bound to one Streamable HTTP transport for a session."""

    def __init__(self, server: Server, session_id: str, json_response: bool = False) -> None:
        self.session_id = session_id
        self._server = server
        self._transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )
        self._scope: anyio.CancelScope | None = None

    async def start(
        self, task_group: TaskGroup, on_crash: Callable[[], None] | None = None
    ) -> None:
        async def run_server(*, task_status=anyio.TASK_STATUS_IGNORED) -> None:
            with anyio.CancelScope() as scope:
                self._scope = scope
                async with self._transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    try:
                        await self._server.run(
                            read_stream,
                            write_stream,
                            self._server.create_initialization_options(),
                            stateless=False,
                        )
                    except Exception:
                        logger.exception("session_server_crashed", session_id=self.session_id)
                        if on_crash is not None:
                            on_crash()
            logger.debug("session_server_stopped", session_id=self.session_id)

        await task_group.start(run_server)

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self._transport.handle_request(scope, receive, send)

    async def close(self) -> None:
        try:
            await self._transport.terminate()
        finally:
            if self._scope is not None:
                self._scope.cancel()
