from typing import Any

from mcp.server.fastmcp.exceptions import ToolError

from ..config import settings
from ..services import DynamicsService, ResolvedEntity


async def _require_entity(service: DynamicsService, entity: str, ctx: Any) -> ResolvedEntity:
    resolved = await service.resolve(entity, ctx)
    if resolved is None:
        raise ToolError(
            f"Could not find a matching entity for '{entity}'. "
            "Please provide a more specific name."
        )
    return resolved


def query_params(
    select: str | None = None,
    filter: str | None = None,
    expand: str | None = None,
    top: int | None = None,
    skip: int | None = None,
    cross_company: bool = False,
) -> dict[str, str]:
    params = {"$top": str(top or settings.default_page_size)}
    if skip:
        params["$skip"] = str(skip)
    if cross_company:
        params["cross-company"] = "true"
    if select:
        params["$select"] = select
    if filter:
        params["$filter"] = filter
    if expand:
        params["$expand"] = expand
    return params


async def query(
    service: DynamicsService, entity: str, params: dict[str, str], ctx: Any = None
) -> str:
    resolved = await _require_entity(service, entity, ctx)
    return await service.call("GET", resolved.url, ctx=ctx, params=params)


async def count(
    service: DynamicsService, entity: str, cross_company: bool = False, ctx: Any = None
) -> str:
    resolved = await _require_entity(service, entity, ctx)
    params = {"cross-company": "true"} if cross_company else None
    return await service.call("GET", f"{resolved.url}/$count", ctx=ctx, params=params)


async def create(service: DynamicsService, entity: str, data: dict, ctx: Any = None) -> str:
    resolved = await _require_entity(service, entity, ctx)
    return await service.call("POST", resolved.url, payload=data, ctx=ctx)


async def update(
    service: DynamicsService, entity: str, key: str, data: dict, ctx: Any = None
) -> str:
    resolved = await _require_entity(service, entity, ctx)
    return await service.call("PATCH", f"{resolved.url}({key})", payload=data, ctx=ctx)


async def metadata(service: DynamicsService, ctx: Any = None) -> str:
    return await service.call("GET", service.data_url("$metadata"), ctx=ctx)


async def candidates(service: DynamicsService, entity: str, limit: int = 5) -> dict:
    ranked = await service.resolver.search(entity, limit=limit)
    threshold = service.resolver.threshold
    return {
        "query": entity,
        "threshold": threshold,
        "candidates": [
            {
                "name": entry.name,
                "locator": entry.locator,
                "score": round(score, 4),
                "accepted": score <= threshold,
            }
            for entry, score in ranked
        ],
    }
