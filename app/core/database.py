"""Database connection and session management."""

from typing import Any, AsyncGenerator
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


# Query parameters that hosted Postgres providers add but asyncpg doesn't support
UNSUPPORTED_PARAMS = {"connection_limit", "pool_timeout", "pgbouncer", "statement_cache_size"}


def get_async_database_url(url: str) -> str:
    """Convert database URL to async-compatible format for asyncpg."""
    parsed = urlparse(url)

    scheme = parsed.scheme
    if not scheme.startswith("postgres"):
        # sqlite+aiosqlite and friends are used as given
        return url
    if scheme in ("postgresql", "postgres"):
        scheme = "postgresql+asyncpg"

    # Filter out unsupported query parameters
    if parsed.query:
        params = parse_qs(parsed.query)
        filtered_params = {k: v for k, v in params.items() if k not in UNSUPPORTED_PARAMS}
        query = urlencode(filtered_params, doseq=True)
    else:
        query = ""

    return urlunparse((
        scheme,
        parsed.netloc,
        parsed.path,
        parsed.params,
        query,
        parsed.fragment,
    ))


def engine_options(url: str) -> dict[str, Any]:
    """Pool options for the configured backend (SQLite has no sized pool)."""
    if url.startswith("sqlite"):
        return {"connect_args": {"timeout": 30}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.database_pool_size,
        "max_overflow": 20,
    }


_database_url = get_async_database_url(settings.database_url)

engine = create_async_engine(
    _database_url,
    echo=settings.debug,
    **engine_options(_database_url),
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Initialize database tables and run migrations."""
    import subprocess
    import sys

    # Importing the package registers every model on Base.metadata
    import app.models  # noqa: F401

    if settings.run_migrations_on_startup:
        result = subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            capture_output=True,
            text=True,
            timeout=60,
        )
        if result.returncode == 0:
            logger.info("alembic_migrations_completed")
        else:
            logger.warning("alembic_migration_warning", stderr=result.stderr[-500:])

    async with engine.begin() as conn:
        # Create tables if they don't exist (fallback)
        await conn.run_sync(Base.metadata.create_all)
