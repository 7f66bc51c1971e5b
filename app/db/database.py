"""Database connection and session management."""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.config import get_settings

settings = get_settings()

# Create async engine
# Always disable SQL echo - recompute statements are large and frequent
engine = create_async_engine(
    settings.database_url,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    echo=False,
    pool_pre_ping=True,  # Verify connections before use to avoid stale connections
    pool_recycle=300,    # Recycle connections after 5 minutes
)

# Session factory
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Alias used by services that open their own transactions
async_session_maker = async_session

# Base class for models
Base = declarative_base()


async def init_db():
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)


async def get_db() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_read_db() -> AsyncSession:
    """Dependency for query-layer sessions.

    Pins the configured isolation level on the session's connection before the
    first statement, so a count and the page it describes see the same
    committed exclusion state.
    """
    async with async_session() as session:
        try:
            if settings.query_isolation_level:
                await session.connection(
                    execution_options={"isolation_level": settings.query_isolation_level}
                )
            yield session
        finally:
            await session.close()
