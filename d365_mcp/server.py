from typing import Any

from .services import DynamicsService
from .tools import odata

try:
    from mcp.server.fastmcp import Context, FastMCP
except ImportError as exc:  # pragma: no cover - runtime guard
    raise RuntimeError(
        "MCP SDK not installed. Install the official MCP Python SDK."
    ) from exc

SERVER_NAME = "d365-fno-mcp-server"


def build_server(service: DynamicsService) -> FastMCP:
    """Build a fresh MCP server; each session gets its own instance."""
    server = FastMCP(name=SERVER_NAME)

    @server.tool("odata_query")
    async def odata_query(
        entity: str,
        ctx: Context,
        select: str | None = None,
        filter: str | None = None,
        expand: str | None = None,
        top: int | None = None,
        skip: int | None = None,
        cross_company: bool = False,
    ) -> str:
        """Query a Dynamics 365 OData entity set. The entity name does not need
        to be exact; it is matched against the service catalog. Responses are
        paginated with top/skip."""
        params = odata.query_params(select, filter, expand, top, skip, cross_company)
        return await odata.query(service, entity, params, ctx)

    @server.tool("get_entity_count")
    async def get_entity_count(entity: str, ctx: Context, cross_company: bool = False) -> str:
        """Count the records of an OData entity set."""
        return await odata.count(service, entity, cross_company, ctx)

    @server.tool("create_record")
    async def create_record(entity: str, data: dict[str, Any], ctx: Context) -> str:
        """Create a record in an OData entity set."""
        return await odata.create(service, entity, data, ctx)

    @server.tool("update_record")
    async def update_record(entity: str, key: str, data: dict[str, Any], ctx: Context) -> str:
        """PATCH a record. ``key`` is the OData key predicate, for example
        dataAreaId='usmf',CustomerAccount='US-001'."""
        return await odata.update(service, entity, key, data, ctx)

    @server.tool("resolve_entity")
    async def resolve_entity(entity: str, limit: int = 5) -> dict[str, Any]:
        """Show the catalog entries closest to an entity name, with scores."""
        return await odata.candidates(service, entity, limit)

    @server.tool("get_odata_metadata")
    async def get_odata_metadata(ctx: Context) -> str:
        """Retrieve the OData $metadata document for the service."""
        return await odata.metadata(service, ctx)

    @server.tool("system_health")
    async def system_health() -> dict[str, Any]:
        """Report whether a token is cached and how many entities are indexed."""
        credential = service.credentials.credential
        index = service.resolver.index
        return {
            "status": "ok",
            "token_cached": credential is not None and credential.is_valid(service.credentials.now()),
            "entity_index_size": None if index is None else len(index),
        }

    return server
