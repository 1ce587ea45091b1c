"""Database engine and session management with async SQLAlchemy."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from enrollment_webhooks.config import Settings

# Declarative base for all models
Base = declarative_base()


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Create the async engine described by settings.

    Pool sizing only applies to server databases; SQLite engines keep the
    dialect defaults.
    """
    options: dict = {"echo": settings.debug, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options.update(pool_size=20, max_overflow=10)

    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory shared by the API and the workers."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
