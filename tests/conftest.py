"""
Shared fixtures: in-memory database, fake clock, stub provider, HTTP client.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

# Set test environment variables before importing app modules.
os.environ.setdefault("JOBBER_CLIENT_ID", "test-client-id")
os.environ.setdefault("JOBBER_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("JOBBER_REDIRECT_URI", "http://app.test/jobber/callback")
os.environ.setdefault("OAUTH_STATE_SECRET", "test-state-secret")
os.environ.setdefault("APP_BASE_URL", "http://app.test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from auth.oauth_state import OAuthStateGuard
from connectors.base import BaseConnector
from connectors.token_manager import CredentialStore
from database.session import init_db
from utils.schemas import TokenResponse
from webhooks.ingestion import WebhookIngestor
from webhooks.signature import WebhookAuthenticator

STATE_SECRET = "test-state-secret"
CLIENT_SECRET = "test-client-secret"
T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def timestamp(self) -> float:
        return self.now.timestamp()


class StubConnector(BaseConnector):
    """Provider double: returns queued responses, records what it was asked."""

    def __init__(self) -> None:
        self.exchange_result: Union[TokenResponse, Exception] = TokenResponse(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_in=3600,
            scope="quotes:read quotes:write",
        )
        self.refresh_results: List[Union[TokenResponse, Exception]] = []
        self.graphql_result: dict = {"data": {"viewer": {"id": "u-1"}}}
        self.exchange_calls: List[str] = []
        self.refresh_calls: List[str] = []
        self.graphql_calls: List[str] = []
        self.before_refresh = None
        self.configured = True

    @property
    def provider_name(self) -> str:
        return "jobber"

    def is_configured(self) -> bool:
        return self.configured

    def get_auth_url(self, state: str) -> str:
        return f"https://provider.test/oauth/authorize?response_type=code&state={state}"

    async def exchange_code(self, code: str) -> TokenResponse:
        self.exchange_calls.append(code)
        if isinstance(self.exchange_result, Exception):
            raise self.exchange_result
        return self.exchange_result

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        self.refresh_calls.append(refresh_token)
        if self.before_refresh is not None:
            await self.before_refresh()
        result = self.refresh_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def graphql(self, access_token: str, query: str, variables: Optional[dict] = None) -> dict:
        self.graphql_calls.append(access_token)
        return self.graphql_result


def _enable_foreign_keys(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    event.listen(eng.sync_engine, "connect", _enable_foreign_keys)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed database with one connection per session, for write races."""
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ingest.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    event.listen(eng.sync_engine, "connect", _enable_foreign_keys)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def connector():
    return StubConnector()


@pytest.fixture
def store(connector, session_factory, clock):
    return CredentialStore(connector, session_factory, clock=clock)


@pytest.fixture
def state_guard(clock):
    return OAuthStateGuard(STATE_SECRET, clock=clock.timestamp)


@pytest.fixture
def authenticator():
    return WebhookAuthenticator(CLIENT_SECRET)


@pytest.fixture
def ingestor(authenticator, session_factory):
    return WebhookIngestor(authenticator, session_factory)


@pytest_asyncio.fixture
async def client(store, ingestor, state_guard, connector):
    from api.dependencies import (
        get_connector,
        get_credential_store,
        get_state_guard,
        get_webhook_ingestor,
    )
    from main import app

    app.dependency_overrides[get_credential_store] = lambda: store
    app.dependency_overrides[get_webhook_ingestor] = lambda: ingestor
    app.dependency_overrides[get_state_guard] = lambda: state_guard
    app.dependency_overrides[get_connector] = lambda: connector
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as http:
            yield http
    finally:
        app.dependency_overrides.clear()
