import asyncio
from typing import Any

import httpx
import structlog

from .config import Settings, settings
from .errors import UpstreamCallError

logger = structlog.get_logger(__name__)

NO_CONTENT_MESSAGE = "Operation successful (No Content)."

_THROTTLED = (429, 503)
_IDEMPOTENT = ("GET", "HEAD")


class DynamicsClient:
    def __init__(
        self,
        config: Settings = settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            timeout=config.http_timeout_seconds, transport=transport
        )

    def _headers(self, token: str, headers: dict | None) -> dict:
        req_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json, text/xml",
            "Prefer": "odata.maxpagesize=100",
        }
        if headers:
            req_headers.update(headers)
        return req_headers

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        headers: dict | None,
        retry: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        req_headers = self._headers(token, headers)
        attempts = max(self._config.max_retry_attempts, 1) if retry else 1
        for attempt in range(attempts):
            response = await self._client.request(
                method, url, headers=req_headers, **kwargs
            )
            if response.status_code in _THROTTLED and attempt + 1 < attempts:
                retry_after = self._retry_after(response)
                logger.info(
                    "dynamics_throttled",
                    status=response.status_code,
                    retry_after=retry_after,
                    attempt=attempt + 1,
                )
                await asyncio.sleep(retry_after)
                continue
            return response
        return response

    async def request(
        self,
        method: str,
        url: str,
        token: str,
        payload: dict | None = None,
        headers: dict | None = None,
        retry: bool | None = None,
        **kwargs: Any,
    ) -> str:
        """Send one upstream call and return the body text.

        Throttled responses (429/503) are retried only when ``retry`` is set,
        which defaults to on for idempotent methods and off for writes.
        """
        if retry is None:
            retry = method.upper() in _IDEMPOTENT
        if payload is not None:
            kwargs["json"] = payload
        response = await self._send(method, url, token, headers, retry=retry, **kwargs)
        if response.status_code == 204:
            return NO_CONTENT_MESSAGE
        if response.status_code >= 400:
            raise UpstreamCallError(
                f"API call failed: {response.status_code} {response.text}",
                response.status_code,
                response.text,
            )
        return response.text

    async def request_json(
        self, method: str, url: str, token: str, **kwargs: Any
    ) -> dict:
        # Single attempt: callers decide what a throttled response means.
        response = await self._send(
            method, url, token, {"Accept": "application/json"}, retry=False, **kwargs
        )
        if response.status_code >= 400:
            raise UpstreamCallError(
                f"API call failed: {response.status_code} {response.text}",
                response.status_code,
                response.text,
            )
        return response.json()

    def _retry_after(self, response: httpx.Response) -> float:
        try:
            return max(float(response.headers.get("Retry-After", "1")), 0.0)
        except ValueError:
            return 1.0

    async def close(self) -> None:
        await self._client.aclose()
