"""
Database Connection — SQLAlchemy async engine & session factory.

``DATABASE_URL`` selects the backend:
  - Supabase Postgres through the session pooler, e.g.
    ``postgresql+asyncpg://postgres.<ref>:<password>@aws-0-<region>.pooler.supabase.com:5432/postgres``
  - a local SQLite file (the default) for offline development

Routes take a session from ``get_db``; background jobs (calendar sync,
publication discovery, the scheduler) open their own with ``async_session()``.
"""

import logging
import os

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./analyst_relations.db",
)


def engine_options(url: str) -> dict:
    """Keyword arguments for ``create_async_engine`` given a database URL."""
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        return {"connect_args": {"check_same_thread": False}}

    options = {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_recycle": 300,  # pooler drops idle connections
        "connect_args": {},
    }
    if make_url(url).get_driver_name() == "asyncpg":
        # Supabase's pooler cannot hold prepared statements
        options["connect_args"] = {"prepared_statement_cache_size": 0, "statement_cache_size": 0}
    return options


def mask_database_url(url: str) -> str:
    """The URL with its password replaced by ``***`` for logging."""
    return make_url(url).render_as_string(hide_password=True)


engine = create_async_engine(DATABASE_URL, echo=False, **engine_options(DATABASE_URL))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db():
    """Create any missing tables."""
    from db import models  # noqa: F401  registers the models

    logger.info("Connecting to database: %s", mask_database_url(DATABASE_URL))
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("Database initialization failed: %s", e, exc_info=True)
        raise
    logger.info("Database tables ready")


async def get_db():
    """FastAPI dependency yielding one session per request."""
    async with async_session() as session:
        yield session
