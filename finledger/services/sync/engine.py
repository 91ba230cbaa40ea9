from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from finledger.core.config import get_settings
from finledger.core.errors import ConnectionNotFoundError, SyncDeadlineExceededError, UpstreamError
from finledger.domain.events import (
    RECEIPT_BALANCE_FETCHED,
    RECEIPT_SYNC_EXECUTED,
    TRANSACTIONS_STREAM,
    ActorType,
    ConnectionStatus,
)
from finledger.persistence.db import SessionLocal
from finledger.persistence.repos import cursors as cursors_repo
from finledger.providers.base import SyncProvider
from finledger.providers.factory import get_sync_provider
from finledger.services import connections as connections_service
from finledger.services.connections import ConnectionRef
from finledger.services.ledger import ingest_command
from finledger.services.receipts import receipted
from finledger.services.sync.commands import balance_command, removal_command, transaction_command
from finledger.services.telemetry import increment_counter
from finledger.services.vault import credential_cache


logger = logging.getLogger(__name__)


@dataclass
class _ConnectionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Runs holding or awaiting the lock; the entry is dropped when this reaches zero.
    users: int = 0


_connection_locks: dict[str, _ConnectionLock] = {}


@dataclass(frozen=True)
class SyncResult:
    connection_id: str
    added: int
    modified: int
    removed: int
    written: int
    pages: int
    cursor: str | None


@dataclass(frozen=True)
class BalanceResult:
    connection_id: str
    accounts: int
    written: int


def _acquire_entry(connection_id: str) -> _ConnectionLock:
    # One writer per connection cursor; different connections run in parallel.
    entry = _connection_locks.get(connection_id)
    if entry is None:
        entry = _ConnectionLock()
        _connection_locks[connection_id] = entry
    entry.users += 1
    return entry


def _release_entry(connection_id: str, entry: _ConnectionLock) -> None:
    entry.users -= 1
    if entry.users == 0 and _connection_locks.get(connection_id) is entry:
        del _connection_locks[connection_id]


async def sync_connection(
    connection_id: str,
    *,
    provider: SyncProvider | None = None,
    deadline_s: float | None = None,
    trigger: str = "manual",
) -> SyncResult:
    # Serialize runs per connection so two runs never race on the same cursor.
    entry = _acquire_entry(connection_id)
    try:
        async with entry.lock:
            async with SessionLocal() as session:
                return await _run_sync(
                    session,
                    connection_id,
                    provider=provider,
                    deadline_s=deadline_s,
                    trigger=trigger,
                )
    finally:
        _release_entry(connection_id, entry)


async def _run_sync(
    session: AsyncSession,
    connection_id: str,
    *,
    provider: SyncProvider | None,
    deadline_s: float | None,
    trigger: str,
) -> SyncResult:
    connection = ConnectionRef.from_row(await connections_service.get_connection(session, connection_id))
    client = provider or get_sync_provider(connection.provider)
    budget_s = deadline_s if deadline_s is not None else get_settings().sync_run_deadline_s
    deadline = time.monotonic() + budget_s if budget_s and budget_s > 0 else None
    stream = TRANSACTIONS_STREAM
    counts = {"added": 0, "modified": 0, "removed": 0, "written": 0, "pages": 0}
    cursor: str | None = None

    try:
        async with receipted(
            session,
            tenant_id=connection.tenant_id,
            office_id=connection.office_id,
            receipt_type=RECEIPT_SYNC_EXECUTED,
            action={
                "connection_id": connection.id,
                "provider": connection.provider,
                "stream": stream,
                "trigger": trigger,
            },
            actor_type=ActorType.WORKER,
        ) as scope:
            credential = await credential_cache.get(session, connection.id)
            cursor = await cursors_repo.get_cursor(session, connection_id=connection.id, stream=stream)
            scope.result["starting_cursor_present"] = cursor is not None
            if cursor is None:
                logger.info(
                    "sync_cursor_missing_starting_fresh connection_id=%s stream=%s",
                    connection.id,
                    stream,
                )
            while True:
                page = await client.transactions_sync(credential, cursor=cursor)
                for item in page.added:
                    result = await ingest_command(
                        session,
                        transaction_command(connection.provider, item),
                        tenant_id=connection.tenant_id,
                        office_id=connection.office_id,
                        connection_id=connection.id,
                        receipt_id=scope.receipt_id,
                    )
                    counts["added"] += 1
                    counts["written"] += int(result.written)
                for item in page.modified:
                    result = await ingest_command(
                        session,
                        transaction_command(connection.provider, item, modified=True),
                        tenant_id=connection.tenant_id,
                        office_id=connection.office_id,
                        connection_id=connection.id,
                        receipt_id=scope.receipt_id,
                    )
                    counts["modified"] += 1
                    counts["written"] += int(result.written)
                for item in page.removed:
                    result = await ingest_command(
                        session,
                        removal_command(connection.provider, item),
                        tenant_id=connection.tenant_id,
                        office_id=connection.office_id,
                        connection_id=connection.id,
                        receipt_id=scope.receipt_id,
                    )
                    counts["removed"] += 1
                    counts["written"] += int(result.written)
                if page.next_cursor:
                    await cursors_repo.upsert_cursor(
                        session,
                        connection_id=connection.id,
                        provider=connection.provider,
                        stream=stream,
                        cursor=page.next_cursor,
                    )
                    cursor = page.next_cursor
                # Page boundary: the page's events and its cursor become durable together.
                await session.commit()
                counts["pages"] += 1
                scope.result.update(counts)
                logger.info(
                    "sync_page_committed connection_id=%s page=%s has_more=%s",
                    connection.id,
                    counts["pages"],
                    page.has_more,
                )
                if not page.has_more:
                    break
                if not page.next_cursor:
                    # Refetching the same cursor would loop forever.
                    raise UpstreamError("provider reported more pages without a next cursor")
                if deadline is not None and time.monotonic() >= deadline:
                    raise SyncDeadlineExceededError(
                        f"sync deadline of {budget_s}s exceeded after {counts['pages']} page(s)"
                    )
            scope.result["cursor_advanced"] = cursor is not None
    except SyncDeadlineExceededError:
        increment_counter("sync_runs_deadline_total")
        logger.warning("sync_deadline_exceeded connection_id=%s pages=%s", connection.id, counts["pages"])
        raise
    except asyncio.CancelledError:
        increment_counter("sync_runs_cancelled_total")
        logger.warning("sync_run_cancelled connection_id=%s pages=%s", connection.id, counts["pages"])
        await asyncio.shield(_mark_status(session, connection.id, ConnectionStatus.ERROR))
        raise
    except Exception as exc:
        increment_counter("sync_runs_failed_total")
        logger.warning(
            "sync_run_failed connection_id=%s pages=%s error=%s",
            connection.id,
            counts["pages"],
            type(exc).__name__,
        )
        await _mark_status(session, connection.id, ConnectionStatus.ERROR)
        raise

    increment_counter("sync_runs_succeeded_total")
    if connection.status != ConnectionStatus.CONNECTED.value:
        await _mark_status(session, connection.id, ConnectionStatus.CONNECTED)
    await connections_service.touch_connection(connection.id, field="last_sync_at")
    logger.info(
        "sync_run_completed connection_id=%s added=%s modified=%s removed=%s written=%s",
        connection.id,
        counts["added"],
        counts["modified"],
        counts["removed"],
        counts["written"],
    )
    return SyncResult(
        connection_id=connection.id,
        added=counts["added"],
        modified=counts["modified"],
        removed=counts["removed"],
        written=counts["written"],
        pages=counts["pages"],
        cursor=cursor,
    )


async def _mark_status(session: AsyncSession, connection_id: str, status: ConnectionStatus) -> None:
    # Status bookkeeping must not mask the sync outcome.
    try:
        await connections_service.update_status(session, connection_id, status)
    except ConnectionNotFoundError:
        logger.warning("sync_status_update_skipped connection_id=%s status=%s", connection_id, status.value)


async def fetch_balances(
    connection_id: str,
    *,
    provider: SyncProvider | None = None,
    trigger: str = "manual",
) -> BalanceResult:
    async with SessionLocal() as session:
        connection = ConnectionRef.from_row(await connections_service.get_connection(session, connection_id))
        client = provider or get_sync_provider(connection.provider)
        written = 0
        accounts = 0
        async with receipted(
            session,
            tenant_id=connection.tenant_id,
            office_id=connection.office_id,
            receipt_type=RECEIPT_BALANCE_FETCHED,
            action={"connection_id": connection.id, "provider": connection.provider, "trigger": trigger},
            actor_type=ActorType.WORKER,
        ) as scope:
            credential = await credential_cache.get(session, connection.id)
            balances = await client.account_balances(credential)
            as_of = datetime.now(timezone.utc)
            for balance in balances:
                result = await ingest_command(
                    session,
                    balance_command(connection.provider, balance, as_of=as_of),
                    tenant_id=connection.tenant_id,
                    office_id=connection.office_id,
                    connection_id=connection.id,
                    receipt_id=scope.receipt_id,
                )
                written += int(result.written)
            accounts = len(balances)
            scope.result.update({"accounts": accounts, "written": written})
    logger.info(
        "balances_fetched connection_id=%s accounts=%s written=%s",
        connection.id,
        accounts,
        written,
    )
    return BalanceResult(connection_id=connection.id, accounts=accounts, written=written)
