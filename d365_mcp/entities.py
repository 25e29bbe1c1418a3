import asyncio
from dataclasses import dataclass

import structlog
from rapidfuzz import utils
from rapidfuzz.distance import Indel

from .auth import CredentialCache
from .config import Settings, settings
from .dynamics import DynamicsClient
from .errors import ConfigurationError, EnumerationError, UpstreamAuthError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceEntry:
    name: str
    locator: str


def dissimilarity(query: str, candidate: str) -> float:
    """Normalized Indel distance in [0, 1], ignoring case and punctuation."""
    return Indel.normalized_distance(query, candidate, processor=utils.default_process)


class EntityIndex:
    def __init__(self, entries: list[ResourceEntry] | tuple[ResourceEntry, ...]) -> None:
        self._entries = tuple(entries)

    @property
    def entries(self) -> tuple[ResourceEntry, ...]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def search(self, query: str) -> list[tuple[ResourceEntry, float]]:
        scored = [
            (entry, min(dissimilarity(query, entry.name), dissimilarity(query, entry.locator)))
            for entry in self._entries
        ]
        # sort is stable: equal scores keep index order
        scored.sort(key=lambda item: item[1])
        return scored


def parse_catalog(payload: dict) -> list[ResourceEntry]:
    try:
        items = payload["value"]
    except (KeyError, TypeError) as exc:
        raise EnumerationError("Catalog response has no 'value' array") from exc
    if not isinstance(items, list):
        raise EnumerationError("Catalog 'value' is not an array")
    entries = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name, url = item.get("name"), item.get("url")
        if name and url:
            entries.append(ResourceEntry(name=str(name), locator=str(url)))
    return entries


class EntityResolver:
    """Turns an approximate entity name into the exact upstream locator.

    The index is built from a full catalog enumeration on first use and is
    kept for the life of the process. A failed enumeration leaves an empty
    index behind, so lookups return ``None`` until :meth:`reset` is called.
    """

    def __init__(
        self,
        credentials: CredentialCache,
        client: DynamicsClient,
        config: Settings = settings,
    ) -> None:
        self._credentials = credentials
        self._client = client
        self._config = config
        self._index: EntityIndex | None = None
        self._inflight: asyncio.Task | None = None
        self._generation = 0

    @property
    def index(self) -> EntityIndex | None:
        return self._index

    @property
    def threshold(self) -> float:
        return self._config.fuzzy_threshold

    async def find_best_match(self, query: str) -> str | None:
        candidates = await self.search(query, limit=1)
        if not candidates:
            return None
        entry, score = candidates[0]
        if score <= self.threshold:
            return entry.locator
        logger.info("entity_not_matched", query=query, best=entry.name, score=score)
        return None

    async def search(self, query: str, limit: int = 5) -> list[tuple[ResourceEntry, float]]:
        index = await self._ensure_index()
        return index.search(query)[:limit]

    def reset(self) -> None:
        # A build already running belongs to the old generation and is dropped.
        self._generation += 1
        self._index = None
        self._inflight = None

    async def _ensure_index(self) -> EntityIndex:
        index = self._index
        if index is not None:
            return index
        task = self._inflight
        if task is None:
            task = asyncio.get_running_loop().create_task(self._build())
            task.add_done_callback(self._flight_done)
            self._inflight = task
        return await asyncio.shield(task)

    async def _build(self) -> EntityIndex:
        generation = self._generation
        # Credential failures propagate and leave the index unbuilt.
        token = await self._credentials.get_token()
        try:
            entries = await self._enumerate(token)
        except (ConfigurationError, UpstreamAuthError):
            raise
        except Exception as exc:
            logger.warning("entity_enumeration_failed", error=str(exc))
            entries = []
        index = EntityIndex(entries)
        if generation != self._generation:
            logger.info("entity_index_discarded", entries=len(index))
            return index
        self._index = index
        logger.info("entity_index_built", entries=len(index))
        return index

    async def _enumerate(self, token: str) -> list[ResourceEntry]:
        if not self._config.dynamics_resource_url:
            raise ConfigurationError("DYNAMICS_RESOURCE_URL is not configured")
        url = f"{self._config.dynamics_resource_url}/data"
        try:
            payload = await self._client.request_json("GET", url, token)
        except ValueError as exc:
            raise EnumerationError(f"Catalog response is not JSON: {exc}") from exc
        except Exception as exc:
            raise EnumerationError(f"Catalog enumeration failed: {exc}") from exc
        return parse_catalog(payload)

    def _flight_done(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            task.exception()
