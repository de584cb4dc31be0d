"""
Database Session Management

One async engine per process, one session per request / per task run.

Lifecycle:
----------
Process start  → create engine (pool ready)
API request    → get_session() → queries → commit/rollback → close
Celery task    → `async with AsyncSessionLocal() as db:` inside run_async()
Shutdown       → close_db() disposes the pool

Pipeline stages keep their transactions short: load, mutate a status or
an artifact, commit. Provider calls (transcription, embeddings) always
happen outside an open write, so no row lock is ever held across the
network.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from mediaflow.core.config import settings
from mediaflow.core.logging import get_logger

logger = get_logger(__name__)


# ================================
# Database Engine Configuration
# ================================

def get_engine_config(database_url: str | None = None) -> dict[str, Any]:
    """
    Build create_async_engine() kwargs for the current environment.

    - development / production: AsyncAdaptedQueuePool sized from settings
    - testing / staging: NullPool, every checkout is a fresh connection

    asyncpg-only connect_args are skipped for other drivers (the test
    suite runs on aiosqlite).
    """
    database_url = database_url or settings.DATABASE_URL
    is_postgres = database_url.startswith("postgresql")

    config: dict[str, Any] = {
        "echo": settings.DB_ECHO,
        "pool_pre_ping": True,
    }

    if is_postgres:
        config["connect_args"] = {
            "server_settings": {
                "application_name": settings.APP_NAME,
            }
        }

    if is_postgres and (settings.is_development or settings.is_production):
        logger.info(
            "configuring_database_engine",
            environment=settings.APP_ENV,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
        config.update({
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_timeout": settings.DB_POOL_TIMEOUT,
            "pool_recycle": 7200 if settings.is_production else 3600,
        })
    else:
        logger.info(
            "configuring_database_engine",
            environment=settings.APP_ENV,
            pool_type="NullPool",
        )
        config["poolclass"] = NullPool

    return config


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the async database engine."""
    database_url = database_url or settings.DATABASE_URL
    engine_config = get_engine_config(database_url)

    engine = create_async_engine(database_url, **engine_config)

    logger.info(
        "database_engine_created",
        dialect=engine.dialect.name,
        pool_size=engine_config.get("pool_size", "NullPool"),
    )
    return engine


# ================================
# Global Engine / Session Factory
# ================================

engine: AsyncEngine = create_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autoflush=False,
    autocommit=False,
    # Stage functions keep reading item attributes after commit()
    expire_on_commit=False,
)


# ================================
# Session Lifecycle Functions
# ================================

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session for a single request.

    Rolls back and re-raises on error; the `async with` closes the session
    and returns the connection to the pool.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            logger.error(
                "database_session_error",
                error=str(e),
                error_type=type(e).__name__,
            )
            await session.rollback()
            raise


async def init_db() -> None:
    """
    Verify connectivity on startup.

    In development the tables are created from the models; every other
    environment relies on Alembic migrations.
    """
    logger.info("initializing_database")

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("database_connection_successful")

        if settings.is_development:
            from mediaflow.db.base import Base
            import mediaflow.models  # noqa: F401  (register tables)

            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("database_tables_created")

    except Exception as e:
        logger.error(
            "database_initialization_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise


async def close_db() -> None:
    """Dispose of the connection pool on shutdown."""
    logger.info("closing_database_connections")

    try:
        await engine.dispose()
        logger.info("database_connections_closed")
    except Exception as e:
        # Shutting down anyway, nothing to propagate to
        logger.error(
            "database_closure_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


# ================================
# Database Health Check
# ================================

async def check_db_health() -> bool:
    """Return True if the database answers `SELECT 1`."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        return False
