"""Database session configuration.

Sessions are created from :data:`SessionLocal`, whose synchronous core is a
:class:`ChangeCaptureSession`. That session records every inserted, updated
and deleted row during flushes and hands the batch to the change feed hub
after the transaction commits, so subscribers only hear about durable writes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Session

from circlekit.core.settings import settings
from circlekit.errors import backend_error_from
from circlekit.services.change_feed import ChangeFeedHub, RowChange, change_feed_hub

logger = logging.getLogger(__name__)

CHANGE_FEED_KEY = "change_feed"
_PENDING_KEY = "pending_row_changes"


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


class ChangeCaptureSession(Session):
    """Session that records row changes and publishes them once committed."""


def _row_change(obj: Any, event_type: str) -> RowChange:
    state = inspect(obj)
    mapper = state.mapper
    # Read from the instance dict so no lazy load is triggered under asyncio.
    record = {attr.key: state.dict.get(attr.key) for attr in mapper.column_attrs}
    return RowChange(table=mapper.local_table.name, event=event_type, record=record)


@event.listens_for(ChangeCaptureSession, "after_flush")
def _capture_changes(session: Session, _flush_context: Any) -> None:
    pending: list[RowChange] = session.info.setdefault(_PENDING_KEY, [])
    pending.extend(_row_change(obj, "INSERT") for obj in session.new)
    pending.extend(
        _row_change(obj, "UPDATE")
        for obj in session.dirty
        if session.is_modified(obj, include_collections=False)
    )
    pending.extend(_row_change(obj, "DELETE") for obj in session.deleted)


@event.listens_for(ChangeCaptureSession, "after_commit")
def _publish_changes(session: Session) -> None:
    changes: list[RowChange] = session.info.pop(_PENDING_KEY, [])
    hub: ChangeFeedHub | None = session.info.get(CHANGE_FEED_KEY)
    if hub is not None and changes:
        hub.publish(changes)


@event.listens_for(ChangeCaptureSession, "after_rollback")
def _discard_changes(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


# Ensure model modules are imported so that metadata is populated when create_all runs.
import circlekit.models  # noqa: E402,F401


def make_session_factory(
    bind: AsyncEngine,
    hub: ChangeFeedHub | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Build a session factory whose commits are published to ``hub``."""
    return async_sessionmaker(
        bind=bind,
        sync_session_class=ChangeCaptureSession,
        autoflush=False,
        expire_on_commit=False,
        info={CHANGE_FEED_KEY: hub if hub is not None else change_feed_hub},
    )


engine = create_async_engine(
    settings.effective_database_url,
    pool_pre_ping=True,
    echo=settings.sql_debug,
)

SessionLocal = make_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session for dependency injection."""
    async with SessionLocal() as db:
        yield db


async def create_tables() -> None:
    """Create all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables() -> None:
    """Drop all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@asynccontextmanager
async def unit_of_work(session: AsyncSession, action: str) -> AsyncIterator[AsyncSession]:
    """Run the body as one transaction and commit it.

    Any failure rolls the whole transaction back. SQLAlchemy errors are
    re-raised as :class:`~circlekit.errors.BackendError` so callers deal with
    one error family.
    """
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Transaction for %s rolled back: %s", action, exc)
        raise backend_error_from(exc, action) from exc
    except BaseException:
        await session.rollback()
        raise
