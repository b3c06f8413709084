# backend/app/db/session.py

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from app.config.settings import settings
from app.utils.errors import ConfigurationError


def create_engine(database_url: str | None = None, **kwargs) -> AsyncEngine:
    url = database_url or settings.database_url
    if not url:
        raise ConfigurationError("RXSNAPSHOT_DATABASE_URL is not set")
    return create_async_engine(url, echo=False, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def dialect_insert(dialect_name: str):
    """Return the ``insert`` construct that supports ON CONFLICT for *dialect_name*."""
    if dialect_name == "sqlite":
        return sqlite.insert
    return postgresql.insert
