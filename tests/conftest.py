from typing import Optional
from urllib.parse import urlencode

import httpx
import pytest

from config import Config
from oauth.stores import PendingAuthorizationStore, RegisteredClientStore
from oauth.token_store import PersistentTokenStore
from oauth.upstream import UpstreamExchangeError, UpstreamTokens

SERVER_URL = "https://proxy.example.com"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Stands in for GoogleOAuthProvider without any network."""

    auth_url = "https://accounts.example.com/auth"

    def __init__(self, rotate_refresh: bool = False):
        self.rotate_refresh = rotate_refresh
        self.exchanged: list[str] = []
        self.refreshed: list[str] = []
        self.exchange_error: Optional[UpstreamExchangeError] = None
        self.refresh_error: Optional[UpstreamExchangeError] = None

    def authorization_url(self, state: str) -> str:
        return f"{self.auth_url}?{urlencode({'state': state})}"

    async def exchange_code(self, code: str) -> UpstreamTokens:
        if self.exchange_error:
            raise self.exchange_error
        self.exchanged.append(code)
        n = len(self.exchanged)
        return UpstreamTokens(
            access_token=f"access-{n}",
            refresh_token=f"refresh-{n}",
            expires_in=3600,
            scope="https://www.googleapis.com/auth/tasks",
        )

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        if self.refresh_error:
            raise self.refresh_error
        self.refreshed.append(refresh_token)
        n = len(self.refreshed)
        return UpstreamTokens(
            access_token=f"refreshed-{n}",
            refresh_token=f"rotated-{n}" if self.rotate_refresh else None,
            expires_in=3600,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def config(tmp_path):
    return Config({
        "GOOGLE_CLIENT_ID": "client-id",
        "GOOGLE_CLIENT_SECRET": "client-secret",
        "OAUTH_SERVER_URL": SERVER_URL + "/",
        "TOKEN_STORE_PATH": str(tmp_path / "tokens.json"),
    })


@pytest.fixture
def token_store(tmp_path, clock):
    return PersistentTokenStore(tmp_path / "tokens.json", clock=clock)


@pytest.fixture
def pending(clock):
    return PendingAuthorizationStore(clock=clock)


@pytest.fixture
def clients(clock):
    return RegisteredClientStore(clock=clock)


@pytest.fixture
def app(config, provider, token_store, pending, clients):
    from main import create_app

    return create_app(
        config,
        provider=provider,
        token_store=token_store,
        pending=pending,
        clients=clients,
    )


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=SERVER_URL) as client:
        yield client
