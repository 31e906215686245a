"""SQLAlchemy async engine and session factory setup."""

import os
from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.config import get_settings


def ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    url = make_url(database_url)
    if not url.get_backend_name().startswith("sqlite"):
        return
    database = url.database
    if not database or database == ":memory:":
        return
    directory = os.path.dirname(os.path.abspath(database))
    os.makedirs(directory, exist_ok=True)


def create_db_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Args:
        database_url: Database URL (default: settings.DATABASE_URL).
        echo: Log SQL statements (default: settings.SQLALCHEMY_ECHO).

    Returns:
        Async SQLAlchemy engine instance.
    """
    settings = get_settings()
    database_url = database_url or settings.DATABASE_URL
    kwargs = dict(echo=settings.SQLALCHEMY_ECHO if echo is None else echo)
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True)
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine):
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables registered on the declarative base."""
    from db.base import Base
    import db.models  # noqa: F401  (registers models)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose the engine's connection pool."""
    await engine.dispose()
