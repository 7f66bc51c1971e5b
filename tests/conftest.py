"""
Pytest fixtures for the exclusion engine and query layer.

Each test gets its own SQLite database file (aiosqlite), so separate sessions
opened by the engine, the background recompute and the test itself all see
the same committed data.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.retry import RetryConfig
from app.core.tasks import TaskManager
from app.db.database import Base
from app.db.models import User
from app.services.exclusion_service import ExclusionComputationService


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'library.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def task_manager():
    TaskManager.reset_instance()
    yield TaskManager.get_instance()
    TaskManager.reset_instance()


@pytest_asyncio.fixture
async def service(session_factory, task_manager):
    svc = ExclusionComputationService(
        session_factory,
        task_manager,
        batch_size=7,  # small, so chunked inserts are exercised
        concurrency=1,
        deferred_delay=0,
        stale_after=0,
        retry_config=RetryConfig(max_attempts=2, base_delay=0, max_delay=0, jitter=0),
    )
    yield svc
    await task_manager.drain(timeout=10)
    await task_manager.cancel_all()


@pytest.fixture
def seed(session_factory):
    """Insert ORM objects (or lists of them) in one committed transaction."""
    async def _seed(*objects):
        rows = []
        for obj in objects:
            rows.extend(obj if isinstance(obj, (list, tuple)) else [obj])
        async with session_factory() as db:
            async with db.begin():
                db.add_all(rows)
    return _seed


@pytest_asyncio.fixture
async def users(seed):
    await seed(User(id=1, username="alice"), User(id=2, username="bob"))
    return (1, 2)

