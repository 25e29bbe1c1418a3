import asyncio

import pytest

from d365_mcp.auth import CredentialCache, TokenResponse, request_client_credentials_token
from d365_mcp.config import Settings
from d365_mcp.errors import ConfigurationError, UpstreamAuthError


def _settings(**overrides) -> Settings:
    values = {
        "tenant_id": "tenant-1",
        "client_id": "client-1",
        "client_secret": "secret-1",
        "dynamics_resource_url": "https://d365.example.com",
        "token_expiry_buffer_seconds": 60,
    }
    values.update(overrides)
    return Settings(**values)


class FakeExchange:
    def __init__(self, expires_in: int = 3600, delay: float = 0.0, error=None):
        self.calls = 0
        self.expires_in = expires_in
        self.delay = delay
        self.error = error

    async def __call__(self, _config):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return TokenResponse(access_token=f"token-{self.calls}", expires_in=self.expires_in)


class Clock:
    def __init__(self, now: float):
        self.value = now

    def __call__(self) -> float:
        return self.value


@pytest.mark.asyncio
async def test_cached_token_is_reused():
    exchange = FakeExchange()
    cache = CredentialCache(_settings(), exchange=exchange)

    first = await cache.get_token()
    second = await cache.get_token()

    assert first == second == "token-1"
    assert exchange.calls == 1


@pytest.mark.asyncio
async def test_expiry_buffer_is_subtracted(monkeypatch):
    exchange = FakeExchange(expires_in=3600)
    cache = CredentialCache(_settings(), exchange=exchange)
    clock = Clock(1_700_000_000.0)
    monkeypatch.setattr(cache, "now", clock)

    assert await cache.get_token() == "token-1"
    assert cache.credential.expires_at == 1_700_000_000.0 + 3540

    clock.value = 1_700_000_000.0 + 3539
    assert await cache.get_token() == "token-1"
    assert exchange.calls == 1

    clock.value = 1_700_000_000.0 + 3541
    assert await cache.get_token() == "token-2"
    assert exchange.calls == 2


@pytest.mark.asyncio
async def test_token_is_not_reused_at_expiry_instant(monkeypatch):
    exchange = FakeExchange(expires_in=120)
    cache = CredentialCache(_settings(), exchange=exchange)
    clock = Clock(1000.0)
    monkeypatch.setattr(cache, "now", clock)

    await cache.get_token()
    clock.value = 1060.0

    assert await cache.get_token() == "token-2"


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_exchange():
    exchange = FakeExchange(delay=0.05)
    cache = CredentialCache(_settings(), exchange=exchange)

    tokens = await asyncio.gather(*(cache.get_token() for _ in range(10)))

    assert exchange.calls == 1
    assert set(tokens) == {"token-1"}


@pytest.mark.asyncio
async def test_concurrent_waiters_all_see_exchange_failure():
    error = UpstreamAuthError("Failed to fetch token: 401", 401, "denied")
    exchange = FakeExchange(delay=0.02, error=error)
    cache = CredentialCache(_settings(), exchange=exchange)

    results = await asyncio.gather(
        *(cache.get_token() for _ in range(5)), return_exceptions=True
    )

    assert exchange.calls == 1
    assert all(isinstance(result, UpstreamAuthError) for result in results)
    assert cache.credential is None


@pytest.mark.asyncio
async def test_failed_exchange_is_retried_on_next_call():
    exchange = FakeExchange(error=UpstreamAuthError("nope", 500, "oops"))
    cache = CredentialCache(_settings(), exchange=exchange)

    with pytest.raises(UpstreamAuthError):
        await cache.get_token()

    exchange.error = None
    assert await cache.get_token() == "token-2"


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_exchange():
    exchange = FakeExchange(delay=0.05)
    cache = CredentialCache(_settings(), exchange=exchange)

    waiter = asyncio.ensure_future(cache.get_token())
    survivor = asyncio.ensure_future(cache.get_token())
    await asyncio.sleep(0.01)
    waiter.cancel()

    assert await survivor == "token-1"
    assert exchange.calls == 1


@pytest.mark.asyncio
async def test_missing_identity_fails_before_exchange():
    exchange = FakeExchange()
    cache = CredentialCache(_settings(client_secret=""), exchange=exchange)

    with pytest.raises(ConfigurationError) as exc:
        await cache.get_token()

    assert "CLIENT_SECRET" in exc.value.message
    assert exchange.calls == 0


@pytest.mark.asyncio
async def test_invalidate_forces_refresh():
    exchange = FakeExchange()
    cache = CredentialCache(_settings(), exchange=exchange)

    await cache.get_token()
    cache.invalidate()

    assert await cache.get_token() == "token-2"


@pytest.mark.asyncio
@pytest.mark.parametrize("expires_in", [30, 60])
async def test_token_shorter_than_buffer_is_refused(monkeypatch, expires_in):
    exchange = FakeExchange(expires_in=expires_in)
    cache = CredentialCache(_settings(), exchange=exchange)
    monkeypatch.setattr(cache, "now", Clock(1000.0))

    with pytest.raises(UpstreamAuthError) as exc:
        await cache.get_token()

    assert "expiry buffer" in exc.value.message
    assert cache.credential is None


class FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


class FakeClient:
    def __init__(self, response: FakeResponse) -> None:
        self._response = response
        self.posts = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, _exc_type, _exc, _tb):
        return False

    async def post(self, url, data=None):
        self.posts.append((url, data))
        return self._response


@pytest.mark.asyncio
async def test_exchange_posts_client_credentials(monkeypatch):
    client = FakeClient(FakeResponse(200, {"access_token": "abc", "expires_in": "3599"}))
    monkeypatch.setattr("d365_mcp.auth.httpx.AsyncClient", lambda *_a, **_k: client)

    response = await request_client_credentials_token(_settings())

    assert response.access_token == "abc"
    assert response.expires_in == 3599
    url, data = client.posts[0]
    assert url == "https://login.microsoftonline.com/tenant-1/oauth2/token"
    assert data["grant_type"] == "client_credentials"
    assert data["resource"] == "https://d365.example.com"


@pytest.mark.asyncio
async def test_exchange_error_carries_status_and_body(monkeypatch):
    response = FakeResponse(
        401,
        {"error": "invalid_client", "error_description": "bad secret"},
        text='{"error": "invalid_client"}',
    )
    monkeypatch.setattr(
        "d365_mcp.auth.httpx.AsyncClient", lambda *_a, **_k: FakeClient(response)
    )

    with pytest.raises(UpstreamAuthError) as exc:
        await request_client_credentials_token(_settings())

    assert exc.value.upstream_status == 401
    assert exc.value.body == '{"error": "invalid_client"}'
    assert "bad secret" in exc.value.message


@pytest.mark.asyncio
async def test_exchange_rejects_malformed_success(monkeypatch):
    response = FakeResponse(200, {"token_type": "Bearer"}, text="{}")
    monkeypatch.setattr(
        "d365_mcp.auth.httpx.AsyncClient", lambda *_a, **_k: FakeClient(response)
    )

    with pytest.raises(UpstreamAuthError):
        await request_client_credentials_token(_settings())


@pytest.mark.asyncio
async def test_exchange_without_configuration_never_opens_client(monkeypatch):
    def forbidden(*_args, **_kwargs):
        raise AssertionError("network must not be touched")

    monkeypatch.setattr("d365_mcp.auth.httpx.AsyncClient", forbidden)

    with pytest.raises(ConfigurationError):
        await request_client_credentials_token(_settings(tenant_id=""))
