"""
Test configuration.

gatepass.config reads the environment once at import, so the test settings
are put in place here, before any gatepass module is imported.
"""

import os
import tempfile
from collections.abc import AsyncGenerator

_TMP = tempfile.mkdtemp(prefix="gatepass-tests-")

os.environ.update({
    "DATABASE_URL": f"sqlite:///{_TMP}/server.db",
    "BOOKING_BACKEND": "pg",
    "PAYMENT_GATEWAY": "mock",
    # nothing listens here: webhook delivery fails fast
    "MOCK_WEBHOOK_URL": "http://127.0.0.1:9/payments/webhook",
    "MOCK_SECRET": "test-mock-secret",
    "TICKET_SECRET": "test-ticket-secret",
    "SESSION_SECRET": "test-session-secret",
    "ADMIN_USERNAME": "organizer",
    "ADMIN_PASSWORD": "letmein",
    "RETURN_POLL_INTERVAL": "0.01",
    "RETURN_POLL_TIMEOUT": "2",
    "RETURN_POLL_MAX_ATTEMPTS": "3",
    "LOG_LEVEL": "DEBUG",
})

import pytest  # noqa: E402
import redis.asyncio as redis  # noqa: E402
from loguru import logger  # noqa: E402
from redis.exceptions import ConnectionError, TimeoutError  # noqa: E402

from gatepass.config import GatewayConfig  # noqa: E402
from gatepass.gateway import MockPay  # noqa: E402
from gatepass.infra.sql import open_sql  # noqa: E402
from gatepass.model.bookings import (  # noqa: E402
    RedisBookingStore, SqlBookingStore,
)
from gatepass.tokens import TicketCodec  # noqa: E402

# a dedicated database: it is flushed before every test
TEST_REDIS_URL = os.getenv("GATEPASS_TEST_REDIS_URL",
                           "redis://127.0.0.1:6379/15")


@pytest.fixture
async def sql_store(tmp_path) -> AsyncGenerator[SqlBookingStore, None]:
    engine, sessions, gated = open_sql(
        f"sqlite:///{tmp_path}/store.db"
    )
    store = SqlBookingStore(engine=engine, sessions=sessions, gated=gated)
    await store.init_schema()
    yield store
    await engine.dispose()


@pytest.fixture
async def redis_store() -> AsyncGenerator[RedisBookingStore, None]:
    r = redis.from_url(TEST_REDIS_URL, decode_responses=True,
                       socket_connect_timeout=0.5)
    try:
        await r.ping()
    except (ConnectionError, TimeoutError, OSError):
        await r.aclose()
        pytest.skip(f"no redis server at {TEST_REDIS_URL}")
    await r.flushdb()
    yield RedisBookingStore(r=r)
    await r.aclose()


@pytest.fixture(params=["sql", "redis"])
def store(request):
    """Every store test runs against both backends."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def mockpay() -> MockPay:
    return MockPay(GatewayConfig(app_id="mockpay",
                                 secret_key="test-mock-secret"))


@pytest.fixture
def codec() -> TicketCodec:
    return TicketCodec(secret="test-ticket-secret")


@pytest.fixture
def log_messages():
    """Collects loguru output as (level, message) pairs."""
    seen = []
    sink_id = logger.add(
        lambda m: seen.append((m.record["level"].name, m.record["message"])),
        level="DEBUG",
    )
    yield seen
    logger.remove(sink_id)
