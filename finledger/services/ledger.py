from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from finledger.domain.events import FinanceEventType
from finledger.persistence.repos import events as events_repo
from finledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestCommand:
    # Normalized provider fact, independent of tenant scope and connection.
    provider: str
    provider_event_id: str
    event_type: FinanceEventType
    occurred_at: datetime
    amount: int | None
    currency: str
    status: str
    entity_refs: dict[str, Any]
    raw_hash: str
    metadata: dict[str, Any] | None = field(default=None)


@dataclass(frozen=True)
class IngestResult:
    written: bool
    event_id: str | None = None


def _normalize_event_type(value: FinanceEventType | str) -> str:
    try:
        return FinanceEventType(value).value
    except ValueError as exc:
        raise ValueError(f"unsupported finance event type: {value}") from exc


def _normalize_amount(value: int | None) -> int | None:
    # Minor units only; floats would silently lose cents.
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("amount must be an integer number of minor currency units")
    return value


def _normalize_currency(value: str) -> str:
    code = (value or "").strip().lower()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"invalid currency code: {value!r}")
    return code


def _normalize_occurred_at(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def ingest(
    session: AsyncSession,
    *,
    tenant_id: str,
    office_id: str,
    connection_id: str | None,
    provider: str,
    provider_event_id: str,
    event_type: FinanceEventType | str,
    occurred_at: datetime,
    amount: int | None,
    currency: str,
    status: str,
    entity_refs: dict[str, Any],
    raw_hash: str,
    receipt_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> IngestResult:
    # Append one event; a repeated idempotency key is a normal no-op, never an error.
    if not tenant_id or not office_id:
        raise ValueError("tenant_id and office_id are required")
    if not provider_event_id:
        raise ValueError("provider_event_id is required")
    event_id = str(uuid4())
    values = {
        "event_id": event_id,
        "tenant_id": tenant_id,
        "office_id": office_id,
        "connection_id": connection_id,
        "provider": provider,
        "provider_event_id": provider_event_id,
        "event_type": _normalize_event_type(event_type),
        "occurred_at": _normalize_occurred_at(occurred_at),
        "amount": _normalize_amount(amount),
        "currency": _normalize_currency(currency),
        "status": status,
        "entity_refs_json": dict(entity_refs or {}),
        "raw_hash": raw_hash,
        "receipt_id": receipt_id,
        "metadata_json": metadata,
    }
    written = await events_repo.insert_if_absent(session, values)
    if not written:
        increment_counter("finance_events_duplicate_total")
        logger.info(
            "finance_event_duplicate provider=%s provider_event_id=%s tenant_id=%s",
            provider,
            provider_event_id,
            tenant_id,
        )
        return IngestResult(written=False)
    increment_counter("finance_events_written_total")
    logger.info(
        "finance_event_written provider=%s provider_event_id=%s event_type=%s tenant_id=%s",
        provider,
        provider_event_id,
        values["event_type"],
        tenant_id,
    )
    return IngestResult(written=True, event_id=event_id)


async def ingest_command(
    session: AsyncSession,
    command: IngestCommand,
    *,
    tenant_id: str,
    office_id: str,
    connection_id: str | None,
    receipt_id: str | None = None,
) -> IngestResult:
    return await ingest(
        session,
        tenant_id=tenant_id,
        office_id=office_id,
        connection_id=connection_id,
        provider=command.provider,
        provider_event_id=command.provider_event_id,
        event_type=command.event_type,
        occurred_at=command.occurred_at,
        amount=command.amount,
        currency=command.currency,
        status=command.status,
        entity_refs=command.entity_refs,
        raw_hash=command.raw_hash,
        receipt_id=receipt_id,
        metadata=command.metadata,
    )
