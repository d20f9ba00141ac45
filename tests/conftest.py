"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, an in-memory Redis and a
mocked payment processor, wired together through ``build_services``.
"""
import os
from typing import Any, AsyncGenerator, List
from unittest.mock import AsyncMock

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio

os.environ.setdefault("WEBHOOK_SECRET", "whsec_test_inbound_secret")
os.environ.setdefault("PROCESSOR_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

from billing_events.api.main import create_app  # noqa: E402
from billing_events.config import Settings  # noqa: E402
from billing_events.database import Database  # noqa: E402
from billing_events.integrations.processor_client import ProcessorClient  # noqa: E402
from billing_events.services import Services, build_services  # noqa: E402

from tests.factories import WEBHOOK_SECRET  # noqa: E402


class RecordingReceiver:
    """Stands in for subscriber endpoints; records every outbound request."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        webhook_secret=WEBHOOK_SECRET,
        processor_secret_key="sk_test_fake_key_for_testing",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        redis_url="redis://localhost:6379/1",
        app_name="billing-events-test",
        app_env="test",
        log_level="DEBUG",
        lock_acquire_timeout_ms=100,
        payout_minimum_amount=1000,
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create a fresh database with all tables."""
    db = Database(settings=test_settings)
    await db.create_all()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.aioredis.FakeRedis, Any]:
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
def processor() -> AsyncMock:
    """Processor client that succeeds unless a test says otherwise."""
    client = AsyncMock(spec=ProcessorClient)
    client.create_transfer.return_value = {"id": "tr_test_123", "amount": 0, "currency": "usd"}
    client.create_payout.return_value = {"id": "po_test_123", "status": "pending"}
    client.retrieve_balance.return_value = 10_000_000
    client.ping.return_value = True
    return client


@pytest.fixture
def receiver() -> RecordingReceiver:
    return RecordingReceiver()


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    database: Database,
    redis_client: Any,
    processor: AsyncMock,
    receiver: RecordingReceiver,
) -> AsyncGenerator[Services, Any]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(receiver.handler))
    yield build_services(
        test_settings,
        database=database,
        redis_client=redis_client,
        processor_client=processor,
        http_client=http_client,
    )
    await http_client.aclose()


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
