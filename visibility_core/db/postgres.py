"""Async PostgreSQL session factory."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from visibility_core.core.config import settings


def make_session_factory() -> async_sessionmaker[AsyncSession]:
    """Create a fresh engine + session factory bound to the current event loop.

    Celery tasks run each coroutine in a new loop (see tasks/pipeline_tasks.py),
    so an engine cannot be shared across tasks.
    """
    engine = create_async_engine(
        settings.postgres_url,
        echo=settings.app_debug,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
    )
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
