from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.routing import Route

from .auth import CredentialCache
from .config import settings
from .dynamics import DynamicsClient
from .entities import EntityResolver
from .errors import MCPError, as_error_payload
from .logging import configure_logging
from .server import build_server
from .services import DynamicsService
from .sessions import SessionRegistry
from .telemetry import configure_telemetry, instrument_fastapi
from .transport import McpSessionHandler

logger = structlog.get_logger(__name__)

configure_logging()
if settings.otel_exporter_otlp_endpoint:
    configure_telemetry("d365-mcp", settings.otel_exporter_otlp_endpoint, settings.otel_api_key)

credentials = CredentialCache()
client = DynamicsClient()
resolver = EntityResolver(credentials, client)
service = DynamicsService(credentials, client, resolver)


def create_handler(session_id: str) -> McpSessionHandler:
    # The registry drives the low-level server directly, as FastMCP's own
    # streamable HTTP app does.
    server = build_server(service)
    return McpSessionHandler(
        server._mcp_server, session_id, json_response=settings.json_response
    )


registry = SessionRegistry(
    create_handler,
    idle_timeout=settings.session_idle_timeout_seconds,
    sweep_interval=settings.session_sweep_interval_seconds,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    try:
        async with registry.run():
            logger.info("d365_mcp_started", port=settings.port)
            yield
    finally:
        await client.close()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(MCPError)
async def handle_mcp_error(_, exc: MCPError):
    return JSONResponse(status_code=exc.status, content=as_error_payload(exc))


@app.get("/healthz")
async def healthz() -> dict:
    return {"status": "ok", "sessions": len(registry)}


app.router.routes.append(
    Route("/mcp", endpoint=registry, methods=["GET", "POST", "DELETE"], include_in_schema=False)
)
if settings.otel_exporter_otlp_endpoint:
    instrument_fastapi(app)


def main() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
