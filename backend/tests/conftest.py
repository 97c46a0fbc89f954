"""Pytest configuration and fixtures for async testing."""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import creditledger.models  # noqa: F401  (registers all tables on the metadata)
from creditledger.config import Settings
from creditledger.container import Container
from creditledger.database import Base, create_session_factory
from creditledger.main import create_app
from creditledger.services.credit_grant_service import CreditGrantService
from creditledger.services.credit_ledger import CreditLedger
from creditledger.services.meter_event_queue import MeterEventQueue
from creditledger.services.usage_aggregator import UsageAggregator
from creditledger.services.usage_reporting import UsageReportingService
from tests.utils.fakes import FakeMeteringProvider, FakePaymentProvider, FakeRedis


@pytest.fixture(scope="function")
def test_settings(tmp_path) -> Settings:  # noqa: ANN001
    """
    Settings pointing at a per-test SQLite database file.

    Backoff and polling are shortened so retry paths finish quickly.
    """
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        stripe_secret_key="sk_test_unit",
        credits_meter_id="mtr_test_credits",
        ledger_max_retries=25,
        meter_backoff_base_seconds=0.01,
        meter_poll_interval_seconds=0.01,
        app_env="test",
    )


@pytest_asyncio.fixture(scope="function")
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a fresh database for each test.

    NullPool gives every session its own connection, so concurrent
    transactions really race; the timeout lets writers wait for the lock.
    """
    test_engine = create_async_engine(
        test_settings.database_url,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture(scope="function")
def ledger(session_factory: async_sessionmaker[AsyncSession], test_settings: Settings) -> CreditLedger:
    return CreditLedger(session_factory, test_settings)


@pytest.fixture(scope="function")
def grant_service(ledger: CreditLedger) -> CreditGrantService:
    return CreditGrantService(ledger)


@pytest.fixture(scope="function")
def queue(session_factory: async_sessionmaker[AsyncSession], test_settings: Settings) -> MeterEventQueue:
    return MeterEventQueue(session_factory, test_settings)


@pytest.fixture(scope="function")
def aggregator() -> UsageAggregator:
    return UsageAggregator()


@pytest.fixture(scope="function")
def usage_reporting(
    session_factory: async_sessionmaker[AsyncSession],
    queue: MeterEventQueue,
    aggregator: UsageAggregator,
    test_settings: Settings,
) -> UsageReportingService:
    return UsageReportingService(session_factory, queue, aggregator, test_settings)


@pytest.fixture(scope="function")
def fake_metering() -> FakeMeteringProvider:
    return FakeMeteringProvider()


@pytest.fixture(scope="function")
def fake_payments() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture(scope="function")
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture(scope="function")
async def container(
    test_settings: Settings,
    engine: AsyncEngine,
    fake_metering: FakeMeteringProvider,
    fake_payments: FakePaymentProvider,
    fake_redis: FakeRedis,
) -> AsyncGenerator[Container, None]:
    """Application container on the test database with fake providers."""
    test_container = Container(
        test_settings,
        engine=engine,
        metering=fake_metering,
        payments=fake_payments,
        redis=fake_redis,
    )
    yield test_container
    if test_container.meter_worker is not None:
        await test_container.meter_worker.shutdown()


@pytest_asyncio.fixture(scope="function")
async def async_client(test_settings: Settings, container: Container) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for API testing.

    Yields:
        AsyncClient: Client bound to an app built around the test container
    """
    app = create_app(test_settings, container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
