"""
Shared fixtures: in-memory database, test settings and mocked HTTP transports
"""
import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from review_ingestion.core.config import Settings
from review_ingestion.core.database import Base
from review_ingestion.models.database import Platform

TEST_DATABASE_URL = "sqlite+aiosqlite://"

SEEDED_PLATFORMS = [
    ("facebook", "Facebook"),
    ("google", "Google Business Profile"),
    ("yelp", "Yelp"),
    ("fake", "Fake Platform"),
]


@pytest.fixture
def test_settings():
    """Settings with every credential present and no retry/poll delays"""
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        GOOGLE_CLIENT_ID="test-google-client-id",
        GOOGLE_CLIENT_SECRET="test-google-secret",
        GOOGLE_REDIRECT_URI="http://localhost:3000/google-callback",
        GOOGLE_MAPS_API_KEY="test-maps-key",
        FACEBOOK_APP_ID="test-facebook-app-id",
        FACEBOOK_APP_SECRET=None,
        YELP_API_KEY="test-yelp-key",
        ZEMBRA_API_TOKEN="test-zembra-token",
        ZEMBRA_POLL_ATTEMPTS=3,
        ZEMBRA_POLL_WAIT_SECONDS=0,
        FUNCTIONS_BASE_URL="https://functions.test",
        FUNCTIONS_SERVICE_KEY="test-service-key",
        HTTP_RETRY_ATTEMPTS=3,
        HTTP_RETRY_MIN_WAIT=0,
        HTTP_RETRY_MAX_WAIT=0,
    )


@pytest_asyncio.fixture
async def mock_http():
    """Build an httpx.AsyncClient whose requests are answered by ``handler``"""
    clients = []

    def factory(handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.aclose()


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite shared by every session of one test"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        session.add_all([
            Platform(name=name, display_name=display_name, is_active=True)
            for name, display_name in SEEDED_PLATFORMS
        ])
        session.add(Platform(name="trustpilot", display_name="Trustpilot", is_active=False))
        await session.commit()
    return factory


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
