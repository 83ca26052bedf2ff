import os

# Must be set before app.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SQUARE_WEBHOOK_SIGNATURE_KEY"] = "test-signature-key"
os.environ["SQUARE_WEBHOOK_NOTIFICATION_URL"] = "https://example.com/api/v1/square/webhooks"

from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
import app.models  # noqa: F401  registers every table on Base.metadata
from app.services import retry
from app.services.cache_service import CatalogCache
from app.services.image_resolver import ImageResolver
from app.services.rate_limiter import NoopRateLimiter

from factories import FakeSquareClient


@pytest.fixture
def engine():
    """
    Fresh in-memory SQLite database per test. StaticPool keeps every session on
    the same connection so they all see the same data.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def square_client():
    return FakeSquareClient()


@pytest.fixture
def probed_urls():
    return []


@pytest.fixture
def image_transport(probed_urls):
    """Sandbox bucket answers 404, production answers 200"""

    def handler(request: httpx.Request) -> httpx.Response:
        probed_urls.append(str(request.url))
        if "sandbox" in request.url.host:
            return httpx.Response(404)
        return httpx.Response(200)

    return httpx.MockTransport(handler)


@pytest.fixture
def image_resolver(square_client, image_transport):
    return ImageResolver(square_client, transport=image_transport, batch_size=2, batch_delay_ms=0)


@pytest.fixture
def cache():
    return CatalogCache(default_ttl=300)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleep


@pytest.fixture
def noop_limiter():
    return NoopRateLimiter()


@pytest.fixture(autouse=True)
def storage_executor(monkeypatch):
    """
    Single worker thread for database calls. Every session shares the one
    in-memory SQLite connection, so calls must not interleave.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    monkeypatch.setattr(retry, "storage_executor", executor)
    yield executor
    executor.shutdown(wait=True)
