from dataclasses import dataclass
from typing import Any

import structlog

from .auth import CredentialCache
from .config import Settings, settings
from .dynamics import DynamicsClient
from .entities import EntityResolver
from .errors import ConfigurationError
from .transport import notify_safely

logger = structlog.get_logger(__name__)


@dataclass
class ResolvedEntity:
    query: str
    locator: str
    url: str


def entity_url(base_url: str, locator: str) -> str:
    if locator.startswith(("http://", "https://")):
        return locator
    if locator.startswith("/"):
        return f"{base_url}{locator}"
    return f"{base_url}/data/{locator}"


class DynamicsService:
    """What tools call: token acquisition, entity resolution, upstream request."""

    def __init__(
        self,
        credentials: CredentialCache,
        client: DynamicsClient,
        resolver: EntityResolver,
        config: Settings = settings,
    ) -> None:
        self.credentials = credentials
        self.client = client
        self.resolver = resolver
        self._config = config

    @property
    def base_url(self) -> str:
        if not self._config.dynamics_resource_url:
            raise ConfigurationError("DYNAMICS_RESOURCE_URL is not configured")
        return self._config.dynamics_resource_url

    def data_url(self, path: str) -> str:
        return f"{self.base_url}/data/{path.lstrip('/')}"

    async def resolve(self, query: str, ctx: Any = None) -> ResolvedEntity | None:
        locator = await self.resolver.find_best_match(query)
        if locator is None:
            return None
        if locator != query:
            await notify_safely(ctx, f"Corrected entity name from '{query}' to '{locator}'.")
        return ResolvedEntity(query=query, locator=locator, url=entity_url(self.base_url, locator))

    async def call(
        self,
        method: str,
        url: str,
        payload: dict | None = None,
        ctx: Any = None,
        params: dict | None = None,
    ) -> str:
        await notify_safely(ctx, f"Calling {method} {url}")
        token = await self.credentials.get_token()
        logger.info("dynamics_call", method=method, url=url)
        kwargs: dict[str, Any] = {}
        if params:
            kwargs["params"] = params
        return await self.client.request(method, url, token, payload=payload, **kwargs)
