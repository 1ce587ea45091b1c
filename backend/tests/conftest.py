"""Pytest configuration and fixtures for async testing."""
import random
import time
from typing import Any, AsyncGenerator, Awaitable, Callable

import fakeredis
import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

import enrollment_webhooks.models  # noqa: F401  registers tables on the metadata
from enrollment_webhooks.config import Settings
from enrollment_webhooks.database import Base, create_engine_from_settings, create_session_factory
from enrollment_webhooks.main import create_app
from enrollment_webhooks.models.webhook_subscription import WebhookSubscription
from enrollment_webhooks.runtime import WebhookRuntime
from utils.factories import WebhookFactory


class FakeClock:
    """Manually advanced clock usable wherever a ``time.time``-like callable is expected."""

    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockEndpoints:
    """
    Stand-in for subscriber endpoints behind ``httpx.MockTransport``.

    Records every outbound request and answers per host: a configured status,
    a connection error, or a timeout. Each request advances ``clock`` by
    ``latency`` seconds to simulate response time.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.requests: list[httpx.Request] = []
        self.statuses: dict[str, int] = {}
        self.unreachable: set[str] = set()
        self.timeouts: set[str] = set()
        self.latency = 0.05

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.clock.advance(self.latency)

        host = request.url.host
        if host in self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)
        if host in self.timeouts:
            raise httpx.ReadTimeout("Read timed out", request=request)
        return httpx.Response(self.statuses.get(host, 200), json={"received": True})

    def requests_to(self, url: str) -> list[httpx.Request]:
        host = httpx.URL(url).host
        return [request for request in self.requests if request.url.host == host]


@pytest.fixture(scope="function")
def settings(tmp_path) -> Settings:
    """
    Settings pointing at a per-test SQLite database.

    Returns:
        Settings: Test configuration
    """
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}",
        app_env="test",
        log_level="WARNING",
        api_rate_limit_per_minute=0,
    )


@pytest_asyncio.fixture(scope="function")
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create the schema in a fresh database for each test.

    Yields:
        AsyncEngine: Engine bound to the test database
    """
    engine = create_engine_from_settings(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Database session for direct service tests.

    Yields:
        AsyncSession: Database session for testing
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    """Monotonic clock driving latency measurements."""
    return FakeClock(1_000.0)


@pytest.fixture(scope="function")
def wall_clock() -> FakeClock:
    """Wall clock driving breaker and limiter windows, signatures and retry scheduling."""
    return FakeClock(time.time())


@pytest.fixture(scope="function")
def endpoints(clock: FakeClock) -> MockEndpoints:
    return MockEndpoints(clock)


@pytest.fixture(scope="function")
def redis_server() -> fakeredis.FakeServer:
    """In-memory Redis server; clients created from it share state like separate processes would."""
    return fakeredis.FakeServer()


@pytest_asyncio.fixture(scope="function")
async def runtime(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_server: fakeredis.FakeServer,
    endpoints: MockEndpoints,
    clock: FakeClock,
    wall_clock: FakeClock,
) -> AsyncGenerator[WebhookRuntime, None]:
    """
    Delivery runtime whose outbound requests go to ``endpoints``.

    Yields:
        WebhookRuntime: Wired breaker, worker, dispatcher and sweeper
    """
    runtime = WebhookRuntime.build(
        settings,
        session_factory,
        httpx.AsyncClient(transport=httpx.MockTransport(endpoints.handler)),
        redis_client=fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True),
        clock=clock,
        wall_clock=wall_clock,
        rng=random.Random(1234),
    )

    yield runtime

    await runtime.aclose()


@pytest.fixture(scope="function")
def app(runtime: WebhookRuntime) -> FastAPI:
    return create_app(runtime.settings, runtime=runtime)


@pytest_asyncio.fixture(scope="function")
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client calling the app in-process.

    Yields:
        AsyncClient: Async HTTP client for API testing
    """
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture(scope="function")
def make_webhook(runtime: WebhookRuntime) -> Callable[..., Awaitable[WebhookSubscription]]:
    """
    Register a webhook in its own committed transaction.

    Returns:
        Async callable accepting registration field overrides
    """

    async def _make_webhook(**overrides: Any) -> WebhookSubscription:
        data = WebhookFactory.create(overrides)
        async with runtime.session_factory() as session:
            subscription = await runtime.registry(session).register(
                data["url"],
                data["events"],
                secret=data.get("secret"),
                config=data.get("config"),
            )
            await session.commit()
        return subscription

    return _make_webhook
