"""Async engine construction for the conversation store.

Usage:
    engine = create_engine_for("sqlite+aiosqlite:///path/echo.db")
    await init_schema(engine)
    sessions = build_sessionmaker(engine)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import event, inspect, text
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from echo_chat.storage.tables import Base, MessageRow


def _is_memory_sqlite(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")


def create_engine_for(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """
    Build the async engine.

    In-memory SQLite shares one connection (StaticPool) so every session
    sees the same database. File databases get their parent directory
    created on demand.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    parsed = make_url(database_url)
    if _is_memory_sqlite(database_url):
        kwargs["poolclass"] = StaticPool
    elif parsed.get_backend_name() == "sqlite" and parsed.database:
        Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(database_url, **kwargs)

    if parsed.get_backend_name() == "sqlite":
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)

    return engine


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: cascades and RESTRICT (disabled by default in SQLite).
    - journal_mode=WAL: readers never block the single writer.
    - synchronous=NORMAL: durable after WAL fsync.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.close()


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_schema(engine: AsyncEngine) -> None:
    """Create all tables and upgrade older databases (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(_add_message_active_flag)
        await conn.run_sync(Base.metadata.create_all)


def _add_message_active_flag(conn: Connection) -> None:
    # Databases created before message editing lack the column and its index
    inspector = inspect(conn)
    if MessageRow.__tablename__ not in inspector.get_table_names():
        return
    if "active" in {c["name"] for c in inspector.get_columns(MessageRow.__tablename__)}:
        return
    conn.execute(text("ALTER TABLE messages ADD COLUMN active BOOLEAN NOT NULL DEFAULT 1"))
    conn.execute(text(
        "CREATE INDEX IF NOT EXISTS ix_messages_conversation_active ON messages (conversation_id, active)"
    ))
