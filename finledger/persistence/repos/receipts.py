from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.domain.models import Receipt


async def get_receipt(session: AsyncSession, receipt_id: str) -> Receipt | None:
    return await session.get(Receipt, receipt_id)


async def list_receipts(
    session: AsyncSession,
    *,
    tenant_id: str,
    office_id: str | None = None,
    receipt_type: str | None = None,
    correlation_id: str | None = None,
    limit: int = 50,
) -> list[Receipt]:
    # Newest first, always tenant scoped.
    stmt = select(Receipt).where(Receipt.tenant_id == tenant_id)
    if office_id:
        stmt = stmt.where(Receipt.office_id == office_id)
    if receipt_type:
        stmt = stmt.where(Receipt.receipt_type == receipt_type)
    if correlation_id:
        stmt = stmt.where(Receipt.correlation_id == correlation_id)
    stmt = stmt.order_by(Receipt.created_at.desc(), Receipt.receipt_id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_unsealed(session: AsyncSession, *, limit: int) -> list[Receipt]:
    # Oldest first so sealing progresses in write order.
    result = await session.execute(
        select(Receipt)
        .where(Receipt.receipt_hash.is_(None))
        .order_by(Receipt.created_at.asc(), Receipt.receipt_id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())
