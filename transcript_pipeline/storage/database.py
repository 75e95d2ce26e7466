"""Async SQLAlchemy engine, session factory and declarative base."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "ck": "ck_%(table_name)s_%(constraint_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)

SessionFactory = async_sessionmaker[AsyncSession]


class Base(DeclarativeBase):
    """Declarative base for all pipeline tables."""

    metadata = metadata


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the form stored in the DB)."""
    return datetime.now(UTC).replace(tzinfo=None)


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, sharing one connection for in-memory SQLite."""
    kwargs: dict[str, object] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
    elif url.startswith("postgresql"):
        kwargs.update({"pool_pre_ping": True, "pool_recycle": 3600})
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    from transcript_pipeline.storage import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")
