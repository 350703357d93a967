import logging
import os
from collections.abc import AsyncGenerator

# Settings are read once; point them at SQLite and away from redis before any catalog import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from catalog.config import Settings  # noqa: E402
from catalog.lib.db.base import Base  # noqa: E402
from catalog.lib.db.session import get_session  # noqa: E402
from catalog.ops.cache.redis_service import RedisService  # noqa: E402
from catalog.ops.cache.store import MemoryCacheStore  # noqa: E402
from catalog.ops.entities.category_node import CategoryNode  # noqa: E402, F401
from catalog.ops.services.tree_service import TreeService  # noqa: E402
from catalog.ops.stats.registry import MetricsRegistry  # noqa: E402
from catalog.ops.wiring import CatalogComponents, build_components  # noqa: E402

# Reduce logging noise during tests
logging.getLogger("asyncio").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("faker.factory").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

DEBOUNCE_WINDOW = 0.05


class FakeClock:
    """Manually advanced clock for TTL and debounce-window tests."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryCacheStore:
    return MemoryCacheStore(clock=clock)


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url=None,
        cache_ttl_seconds=3600,
        debounce_window_seconds=DEBOUNCE_WINDOW,
        flush_max_attempts=3,
        flush_backoff_seconds=[0.01, 0.01, 0.01],
        flush_timeout_seconds=1.0,
        flush_worker_concurrency=2,
        max_depth=10,
    )


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    # One shared connection so every session sees the same in-memory database
    engine = create_async_engine(
        "sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )

    @event.listens_for(engine.sync_engine, "connect")
    def enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
async def components(
    test_settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    memory_store: MemoryCacheStore,
    metrics: MetricsRegistry,
) -> AsyncGenerator[CatalogComponents, None]:
    wired = build_components(test_settings, session_maker, memory_store, metrics=metrics)
    await wired.worker.start()
    yield wired
    await wired.worker.stop()


@pytest.fixture
async def tree_service(
    session_maker: async_sessionmaker[AsyncSession], components: CatalogComponents
) -> AsyncGenerator[TreeService, None]:
    async with session_maker() as session:
        yield TreeService(session, notifier=components.notifier, max_depth=components.settings.max_depth)


@pytest.fixture
async def client(
    components: CatalogComponents, session_maker: async_sessionmaker[AsyncSession]
) -> AsyncGenerator[AsyncClient, None]:
    from catalog.main import create_app, install_components

    app = create_app(lifespan_handler=None)
    install_components(app, components, RedisService(None))

    async def override_get_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
