# tests/conftest.py
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from aggregator.config import EngineConfig
from aggregator.domain.types import PriceRange, PropertyType, Query
from aggregator.models import Base


@pytest.fixture
async def db_engine():
    """
    Fresh in-memory DB per test. StaticPool makes all connections share the same
    in-memory database for the lifetime of this engine fixture.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def async_session_maker(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, autoflush=True)


@pytest.fixture
def fast_config():
    """Engine knobs scaled down so retry and deadline tests run in milliseconds."""
    return EngineConfig(
        global_concurrency=6,
        per_source_concurrency=2,
        max_attempts=3,
        backoff_base_s=0.01,
        backoff_cap_s=0.05,
        attempt_timeout_s=1.0,
        query_deadline_s=2.0,
        page_cap=3,
    )


@pytest.fixture
def mdp_query():
    return Query(
        location="mar-del-plata",
        property_type=PropertyType.apartment,
        price_range=PriceRange(max=250_000, currency="USD"),
    )
