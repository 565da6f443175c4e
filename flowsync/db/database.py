"""Async SQLAlchemy engine, session factory, and schema bootstrap."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from flowsync.exceptions import PersistenceError

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ships with FK enforcement off; cascades depend on it.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine. SQLite connections get ``foreign_keys=ON``."""
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_async_engine(database_url, echo=echo, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(session_factory) -> AsyncIterator[AsyncSession]:
    """Open a session, roll back on error, always close.

    SQLAlchemy failures surface as :class:`PersistenceError`. Closing the
    session discards anything left uncommitted on other exit paths.
    """
    async with session_factory() as session:
        try:
            yield session
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError(f"Storage operation failed: {exc.__class__.__name__}: {exc}") from exc


def _add_missing_columns(sync_conn) -> list[str]:
    """Additive migration: ALTER TABLE ... ADD COLUMN for every mapped column not yet present."""
    from flowsync.db.models import Base

    inspector = inspect(sync_conn)
    existing_tables = set(inspector.get_table_names())
    preparer = sync_conn.dialect.identifier_preparer
    added: list[str] = []

    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        present = {c["name"] for c in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in present:
                continue
            col_type = column.type.compile(dialect=sync_conn.dialect)
            sync_conn.execute(text(
                f"ALTER TABLE {preparer.quote(table.name)} "
                f"ADD COLUMN {preparer.quote(column.name)} {col_type}"
            ))
            added.append(f"{table.name}.{column.name}")
    return added


async def init_db(engine: AsyncEngine) -> None:
    """Create missing tables, then add missing columns. Safe to call repeatedly."""
    from flowsync.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        added = await conn.run_sync(_add_missing_columns)
    if added:
        logger.info("Schema migration added columns: %s", ", ".join(added))
