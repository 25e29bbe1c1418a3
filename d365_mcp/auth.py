import asyncio
import json
import time
from dataclasses import dataclass

import httpx
import structlog

from .config import Settings, settings
from .errors import ConfigurationError, UpstreamAuthError

logger = structlog.get_logger(__name__)


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int


@dataclass(frozen=True)
class CachedCredential:
    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


def _required_identity(config: Settings) -> tuple[str, str, str, str]:
    values = {
        "TENANT_ID": config.tenant_id,
        "CLIENT_ID": config.client_id,
        "CLIENT_SECRET": config.client_secret,
        "DYNAMICS_RESOURCE_URL": config.dynamics_resource_url,
    }
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ConfigurationError(
            "Missing required environment variables for authentication: "
            + ", ".join(missing)
        )
    return (
        config.tenant_id,
        config.client_id,
        config.client_secret,
        config.dynamics_resource_url,
    )


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or None
    if isinstance(payload, dict):
        detail = payload.get("error_description") or payload.get("error")
        if detail:
            return str(detail)
    return json.dumps(payload)


async def request_client_credentials_token(config: Settings = settings) -> TokenResponse:
    tenant_id, client_id, client_secret, resource = _required_identity(config)
    url = f"{config.authority_host}/{tenant_id}/oauth2/token"
    data = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
        "resource": resource,
    }
    async with httpx.AsyncClient(timeout=config.http_timeout_seconds) as client:
        response = await client.post(url, data=data)
    if response.status_code >= 400:
        detail = _error_detail(response)
        message = f"Failed to fetch token: {response.status_code}"
        if detail:
            message = f"{message} {detail}"
        raise UpstreamAuthError(message, response.status_code, response.text)
    try:
        payload = response.json()
        return TokenResponse(
            access_token=payload["access_token"],
            expires_in=int(payload["expires_in"]),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise UpstreamAuthError(
            f"Malformed token response: {exc}", response.status_code, response.text
        ) from exc


class CredentialCache:
    """Holds the single bearer token used for every upstream call.

    The token is refreshed when missing or expired. ``expires_at`` is pulled
    in by the configured buffer, so a token is never handed out inside the
    last ``buffer`` seconds of its real lifetime. Concurrent misses share one
    in-flight exchange.
    """

    def __init__(self, config: Settings = settings, exchange=None) -> None:
        self._config = config
        self._exchange = exchange or request_client_credentials_token
        self._credential: CachedCredential | None = None
        self._inflight: asyncio.Task | None = None

    @property
    def credential(self) -> CachedCredential | None:
        return self._credential

    def now(self) -> float:
        return time.time()

    async def get_token(self) -> str:
        credential = self._credential
        if credential is not None and credential.is_valid(self.now()):
            logger.debug("credential_cache_hit", expires_at=credential.expires_at)
            return credential.token

        task = self._inflight
        if task is None:
            logger.info("credential_cache_refresh")
            task = asyncio.get_running_loop().create_task(self._refresh())
            task.add_done_callback(self._flight_done)
            self._inflight = task
        # A cancelled waiter must not cancel the exchange other callers share.
        credential = await asyncio.shield(task)
        return credential.token

    def invalidate(self) -> None:
        self._credential = None

    async def _refresh(self) -> CachedCredential:
        # Checked here so a missing variable never reaches the network.
        _required_identity(self._config)
        fetched_at = self.now()
        try:
            response = await self._exchange(self._config)
        except Exception as exc:
            logger.warning("credential_cache_refresh_failed", error=str(exc))
            raise
        lifetime = response.expires_in - self._config.token_expiry_buffer_seconds
        if lifetime <= 0:
            logger.warning(
                "credential_cache_lifetime_too_short",
                expires_in=response.expires_in,
                buffer=self._config.token_expiry_buffer_seconds,
            )
            raise UpstreamAuthError(
                f"Token lifetime {response.expires_in}s does not exceed the "
                f"{self._config.token_expiry_buffer_seconds}s expiry buffer",
                200,
                "",
            )
        credential = CachedCredential(
            token=response.access_token, expires_at=fetched_at + lifetime
        )
        self._credential = credential
        logger.info(
            "credential_cache_refreshed",
            expires_in=response.expires_in,
            expires_at=credential.expires_at,
        )
        return credential

    def _flight_done(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Marks the exception retrieved when every waiter went away.
            task.exception()
