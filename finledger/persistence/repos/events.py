from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.domain.models import FinanceEvent
from finledger.persistence.db import dialect_name


_IDEMPOTENCY_COLUMNS = ["tenant_id", "office_id", "provider", "provider_event_id"]


async def insert_if_absent(session: AsyncSession, values: dict[str, Any]) -> bool:
    # Race-safe insert: the unique constraint arbitrates concurrent writers, losers get no row back.
    if dialect_name(session) == "postgresql":
        stmt = pg_insert(FinanceEvent).values(**values)
    else:
        stmt = sqlite_insert(FinanceEvent).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=_IDEMPOTENCY_COLUMNS).returning(FinanceEvent.event_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def get_by_idempotency_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    office_id: str,
    provider: str,
    provider_event_id: str,
) -> FinanceEvent | None:
    result = await session.execute(
        select(FinanceEvent).where(
            FinanceEvent.tenant_id == tenant_id,
            FinanceEvent.office_id == office_id,
            FinanceEvent.provider == provider,
            FinanceEvent.provider_event_id == provider_event_id,
        )
    )
    return result.scalar_one_or_none()


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    office_id: str | None = None,
    provider: str | None = None,
    event_type: str | None = None,
    connection_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[FinanceEvent]:
    # Scope all ledger queries to a tenant to prevent cross-tenant leakage.
    stmt = select(FinanceEvent).where(FinanceEvent.tenant_id == tenant_id)
    if office_id:
        stmt = stmt.where(FinanceEvent.office_id == office_id)
    if provider:
        stmt = stmt.where(FinanceEvent.provider == provider)
    if event_type:
        stmt = stmt.where(FinanceEvent.event_type == event_type)
    if connection_id:
        stmt = stmt.where(FinanceEvent.connection_id == connection_id)
    if occurred_from:
        stmt = stmt.where(FinanceEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(FinanceEvent.occurred_at <= occurred_to)
    stmt = stmt.order_by(FinanceEvent.occurred_at.desc(), FinanceEvent.event_id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_events(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    connection_id: str | None = None,
    provider: str | None = None,
) -> int:
    stmt = select(func.count()).select_from(FinanceEvent)
    if tenant_id:
        stmt = stmt.where(FinanceEvent.tenant_id == tenant_id)
    if connection_id:
        stmt = stmt.where(FinanceEvent.connection_id == connection_id)
    if provider:
        stmt = stmt.where(FinanceEvent.provider == provider)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)
