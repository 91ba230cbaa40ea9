from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.domain.models import SyncCursor
from finledger.persistence.db import dialect_name


async def get_cursor(session: AsyncSession, *, connection_id: str, stream: str) -> str | None:
    result = await session.execute(
        select(SyncCursor.cursor).where(
            SyncCursor.connection_id == connection_id,
            SyncCursor.stream == stream,
        )
    )
    return result.scalar_one_or_none()


async def upsert_cursor(
    session: AsyncSession,
    *,
    connection_id: str,
    provider: str,
    stream: str,
    cursor: str,
) -> None:
    # Exactly one live cursor per (connection, stream); replace in place.
    now = datetime.now(timezone.utc)
    values = {
        "id": str(uuid4()),
        "connection_id": connection_id,
        "provider": provider,
        "stream": stream,
        "cursor": cursor,
        "updated_at": now,
    }
    if dialect_name(session) == "postgresql":
        stmt = pg_insert(SyncCursor).values(**values)
    else:
        stmt = sqlite_insert(SyncCursor).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["connection_id", "stream"],
        set_={"cursor": cursor, "updated_at": now},
    )
    await session.execute(stmt)


async def delete_cursors(session: AsyncSession, *, connection_id: str, stream: str | None = None) -> int:
    # Explicit resync is the only way a cursor moves backwards.
    stmt = delete(SyncCursor).where(SyncCursor.connection_id == connection_id)
    if stream:
        stmt = stmt.where(SyncCursor.stream == stream)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)
