"""
Shared test fixtures for the AdSparker backend test suite.

NOTE: This test suite uses aiosqlite as the async SQLite driver so that tests
run against an in-memory database instead of a real PostgreSQL instance.
It is declared in ``pyproject.toml`` under ``[project.optional-dependencies] test``.

Meta Graph API and exchange-rate traffic never leaves the process: the
``graph`` fixture is an ``httpx.MockTransport`` handler injected into the
Meta and exchange-rate services through FastAPI dependency overrides.
"""

from __future__ import annotations

import json
import os
import uuid
from typing import AsyncGenerator
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

# Settings are cached on first use, so configure them before importing the app
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("META_APP_ID", "test-app-id")
os.environ.setdefault("META_APP_SECRET", "test-app-secret")
os.environ.setdefault("META_INSIGHTS_REQUEST_DELAY", "0")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB  # noqa: E402

# UUID(as_uuid=True) -> CHAR(32)  (SQLAlchemy stores UUIDs as hex strings)
# JSONB             -> JSON       (SQLite has built-in JSON1 via json type)

from app.database import Base, get_db  # noqa: E402  (after env setup)
from app.dependencies import get_exchange_rate_service, get_meta_service  # noqa: E402
from app.models.meta import MetaConnection  # noqa: E402
from app.models.project import Project  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services.currency import ExchangeRateService  # noqa: E402
from app.services.meta_api import MetaAPIService  # noqa: E402
from app.utils.security import create_access_token, hash_password  # noqa: E402

# Import all models so Base.metadata has every table registered.
import app.models  # noqa: F401, E402

# ---------------------------------------------------------------------------
# Async SQLite engine (in-memory, shared across a single test run)
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    # SQLite needs ``check_same_thread=False`` when used with async.
    connect_args={"check_same_thread": False},
)

TestingSessionLocal = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


@event.listens_for(engine_test.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable foreign keys for the SQLite connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Register compile-time overrides so PG-specific types get rendered as
# something SQLite understands.
from sqlalchemy.ext.compiler import compiles  # noqa: E402


@compiles(PG_UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# ---------------------------------------------------------------------------
# Fake Graph API
# ---------------------------------------------------------------------------

GRAPH_HOST = "graph.facebook.com"
EXCHANGE_RATE_URL = "https://api.exchangerate-api.com/v4/latest/USD"


class FakeGraph:
    """Scripted responses for Graph API (and other outbound) requests.

    Graph paths are registered without the version prefix, e.g.
    ``graph.on("POST", "/act_123/campaigns", {"id": "c1"})``; any other host
    is registered by full URL. Several responses for one route are served in
    order and the last one repeats. A response is a dict (200 JSON), a
    ``(status, body)`` tuple where body is a dict or bytes, or an
    ``httpx.Response``.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    @staticmethod
    def _key(request: httpx.Request) -> tuple[str, str]:
        url = request.url
        if url.host == GRAPH_HOST:
            # "/v18.0/act_1/ads" -> "/act_1/ads"
            return request.method, "/" + url.path.split("/", 2)[2]
        return request.method, f"{url.scheme}://{url.host}{url.path}"

    def on(self, method: str, path: str, *responses) -> "FakeGraph":
        self.routes[(method, path)] = list(responses)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(self._key(request))
        if not queue:
            return httpx.Response(404, json={"error": {"message": f"No route for {self._key(request)}", "code": 803}})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, httpx.Response):
            return response
        if isinstance(response, tuple):
            status, body = response
            if isinstance(body, bytes):
                return httpx.Response(status, content=body, headers={"content-type": "image/png"})
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=response)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if self._key(r) == (method, path)]

    @staticmethod
    def form(request: httpx.Request) -> dict:
        """Decode a form-encoded Graph request body, JSON-decoding nested values."""
        decoded = {}
        for key, value in parse_qsl(request.content.decode()):
            try:
                decoded[key] = json.loads(value) if value[:1] in "{[" else value
            except ValueError:
                decoded[key] = value
        return decoded


@pytest.fixture()
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture()
def meta_service(graph: FakeGraph) -> MetaAPIService:
    return MetaAPIService(transport=graph.transport)


@pytest.fixture()
def rate_service(graph: FakeGraph) -> ExchangeRateService:
    return ExchangeRateService(transport=graph.transport)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(scope="session")
async def setup_database():
    """Create all tables once per test session, then drop them at teardown."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine_test.dispose()


@pytest_asyncio.fixture()
async def db_session(setup_database) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional database session that rolls back after each test,
    keeping every test isolated.
    """
    async with engine_test.connect() as conn:
        transaction = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        try:
            yield session
        finally:
            await session.close()
            await transaction.rollback()


@pytest_asyncio.fixture()
async def client(db_session: AsyncSession, graph: FakeGraph) -> AsyncGenerator[AsyncClient, None]:
    """
    FastAPI test client that uses ``httpx.AsyncClient`` with ``ASGITransport``.
    ``get_db`` is overridden to inject the test session, and the Meta and
    exchange-rate services talk to the ``graph`` fixture.
    """
    from app.api.v1 import auth
    from app.main import app

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_meta_service] = lambda: MetaAPIService(transport=graph.transport)
    app.dependency_overrides[get_exchange_rate_service] = lambda: ExchangeRateService(transport=graph.transport)
    app.state.limiter.enabled = False
    auth.limiter.enabled = False

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user (email="test@example.com", password "TestPassword123")."""
    user = User(
        id=uuid.uuid4(),
        email="test@example.com",
        password_hash=hash_password("TestPassword123"),
        full_name="Test User",
        is_active=True,
    )
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture()
async def auth_headers(test_user: User) -> dict[str, str]:
    """
    Return an ``Authorization: Bearer <token>`` header dict for the test user.
    """
    token = create_access_token(data={"sub": str(test_user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture()
async def meta_connection(db_session: AsyncSession, test_user: User) -> MetaConnection:
    """An active Meta connection whose token decrypts to ``test-token``."""
    conn = MetaConnection(
        user_id=test_user.id,
        access_token_encrypted=MetaAPIService().encrypt_token("test-token"),
        fb_user_id="fb-1",
        fb_user_name="Test FB User",
        fb_user_email="fb@example.com",
        ad_accounts=[
            {"id": "act_123", "account_id": "123", "name": "Main", "currency": "USD", "account_status": 1},
        ],
        is_active=True,
    )
    db_session.add(conn)
    await db_session.flush()
    return conn


@pytest_asyncio.fixture()
async def project(db_session: AsyncSession, test_user: User) -> Project:
    """A project with a default thumbnail and a Traffic campaign proposal."""
    proj = Project(
        user_id=test_user.id,
        status="PENDING",
        url_analysis={"website_url": "https://shop.example.com"},
        ad_set_proposals=[],
        campaign_proposal={"ad_goal": "Traffic", "end_date": "2030-01-31"},
        adset_thumbnail_image={"default": "https://cdn.example.com/thumb.png"},
    )
    db_session.add(proj)
    await db_session.flush()
    return proj
