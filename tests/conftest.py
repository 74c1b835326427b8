"""Shared test fixtures.

Every test gets a fresh in-memory SQLite database behind the real
``pawpals.database`` module, so services, the engine and the HTTP app all
run against the same schema without PostgreSQL or Redis.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import BigInteger, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.compiler import compiles

os.environ.setdefault("PAWPALS_PUSH_PROVIDER", "log")
os.environ.setdefault("PAWPALS_SEED_CATALOG_ON_STARTUP", "false")
os.environ.setdefault("PAWPALS_JWT_SECRET", "test-secret")

from pawpals.auth.jwt import create_access_token  # noqa: E402
from pawpals.config import get_settings  # noqa: E402
from pawpals.database import close_db, create_tables, get_engine, get_session_factory, init_db  # noqa: E402
from pawpals.db.models import User  # noqa: E402
from pawpals.gamification.seed import seed_catalog  # noqa: E402
from pawpals.notifications.delivery import DeliveryRouter  # noqa: E402
from pawpals.notifications.push_service import (  # noqa: E402
    STATUS_INVALID_TOKEN,
    STATUS_OK,
    BasePushProvider,
    PushMessage,
    PushResult,
    reset_push_provider,
)
from pawpals.notifications.realtime import LocalRealtimeChannel  # noqa: E402
from pawpals.ws.manager import ConnectionManager  # noqa: E402


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(_type, _compiler, **_kw):  # noqa: ANN001, ANN202
    return "TEXT"


@compiles(BigInteger, "sqlite")
def _bigint_sqlite(_type, _compiler, **_kw):  # noqa: ANN001, ANN202
    # INTEGER PRIMARY KEY is the only SQLite autoincrement form
    return "INTEGER"


TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture(autouse=True)
def _fresh_settings() -> None:
    get_settings.cache_clear()
    reset_push_provider()


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None, None]:
    """Fresh in-memory schema for one test."""
    await init_db(TEST_DATABASE_URL)
    sync_engine = get_engine().sync_engine

    # pysqlite needs explicit BEGIN for SAVEPOINT to work
    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    await create_tables()
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for setup and assertions."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def seeded(database: None) -> None:
    """Badge catalog and default missions."""
    async with get_session_factory()() as session:
        await seed_catalog(session)


async def _make_user(username: str, *, is_admin: bool = False, **fields: Any) -> User:
    async with get_session_factory()() as session:
        user = User(username=username, is_admin=is_admin, is_active=True, **fields)
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def user(database: None) -> User:
    return await _make_user("rex_owner", first_name="Dana", last_name="Walker")


@pytest_asyncio.fixture
async def other_user(database: None) -> User:
    return await _make_user("bella_owner", first_name="Sam")


@pytest_asyncio.fixture
async def admin_user(database: None) -> User:
    return await _make_user("park_admin", is_admin=True)


class RecordingPushProvider(BasePushProvider):
    """Push provider that records messages; ``invalid`` tokens are rejected."""

    def __init__(self, invalid: set[str] | None = None, fail: set[str] | None = None) -> None:
        self.sent: list[PushMessage] = []
        self.invalid = invalid or set()
        self.fail = fail or set()

    async def send(self, message: PushMessage) -> PushResult:
        self.sent.append(message)
        if message.to in self.fail:
            msg = "provider unavailable"
            raise RuntimeError(msg)
        if message.to in self.invalid:
            return PushResult(token=message.to, status=STATUS_INVALID_TOKEN, detail="DeviceNotRegistered")
        return PushResult(token=message.to, status=STATUS_OK, detail="ticket-1")


@pytest.fixture
def connections() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture
def push_provider() -> RecordingPushProvider:
    return RecordingPushProvider()


@pytest_asyncio.fixture
async def delivery(
    database: None, connections: ConnectionManager, push_provider: RecordingPushProvider
) -> AsyncGenerator[DeliveryRouter, None]:
    """Delivery to the test fakes; background deliveries finish before teardown."""
    router = DeliveryRouter(LocalRealtimeChannel(connections), push_provider)
    yield router
    await router.drain()


def _auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def create_user(database: None):  # noqa: ANN201
    """Factory for extra committed users."""
    return _make_user


@pytest.fixture
def auth_headers():  # noqa: ANN201
    """Bearer headers for a user."""
    return _auth_headers


@pytest_asyncio.fixture
async def client(database: None, delivery: DeliveryRouter) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, with delivery routed to the test fakes."""
    from pawpals.dependencies import get_delivery
    from pawpals.main import create_app

    app = create_app()
    app.dependency_overrides[get_delivery] = lambda: delivery
    transport = ASGITransport(app=app)

    async def _drain(_response: Any) -> None:
        # Responses return before delivery; settle it so assertions see the outcome
        await delivery.drain()

    async with AsyncClient(
        transport=transport, base_url="http://test", event_hooks={"response": [_drain]}
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def authed_client(client: AsyncClient, user: User) -> AsyncClient:
    client.headers.update(_auth_headers(user))
    return client


@pytest.fixture
def make_push_provider():  # noqa: ANN201
    """Factory for push providers with rejected or failing tokens."""
    return RecordingPushProvider
