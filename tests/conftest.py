from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

import httpx
import pytest

from companion.errors import IdPError
from companion.idp_client import IdPClient
from companion.main import create_app
from companion.mediator import AuthorizationMediator
from companion.models import CallerIdentity, TokenGrant
from companion.settings import Settings


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubIdP(IdPClient):
    """Real authorize URL building, canned token endpoint."""
    def __init__(self) -> None:
        super().__init__(
            authorize_url="https://idp.example/authorize",
            token_url="https://idp.example/token",
            client_id="companion-test",
            scope="profile",
        )
        self.grant = TokenGrant(access_token="tok1", refresh_token="ref1", expires_in=3600)
        self.refreshed = TokenGrant(access_token="tok2", refresh_token="ref2", expires_in=3600)
        self.error: Optional[IdPError] = None
        self.refresh_error: Optional[IdPError] = None
        self.gate: Optional[asyncio.Event] = None
        self.exchanges: List[Tuple[str, str, Optional[str]]] = []
        self.refreshes: List[str] = []

    async def exchange_code(self, authorization_code, redirect_uri, *, code_verifier=None):
        self.exchanges.append((authorization_code, redirect_uri, code_verifier))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.grant

    async def refresh(self, refresh_token):
        self.refreshes.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refreshed


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def idp() -> StubIdP:
    return StubIdP()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        BASE_URL="https://companion.test",
        IDP_AUTHORIZE_URL="https://idp.example/authorize",
        IDP_TOKEN_URL="https://idp.example/token",
        IDP_CLIENT_ID="companion-test",
        CODE_TTL_SECONDS=600,
        SESSION_TTL_SECONDS=900,
        POLL_INTERVAL_SECONDS=5,
        PURGE_INTERVAL_SECONDS=3600,
    )


@pytest.fixture
def device() -> CallerIdentity:
    return CallerIdentity(authenticated=True, subject="CN=dsn-42")


@pytest.fixture
def mediator(settings, idp, clock) -> AuthorizationMediator:
    return AuthorizationMediator.from_settings(settings, idp=idp, clock=clock)


@pytest.fixture
def app(settings, idp, clock):
    return create_app(settings, idp=idp, clock=clock)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="https://companion.test") as ac:
        yield ac
