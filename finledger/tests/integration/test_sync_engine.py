from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from finledger.core.errors import ConnectionNotFoundError, SyncDeadlineExceededError, UpstreamError
from finledger.domain.events import RECEIPT_BALANCE_FETCHED, RECEIPT_SYNC_EXECUTED, TRANSACTIONS_STREAM, FinanceEventType
from finledger.persistence.db import SessionLocal
from finledger.persistence.repos import connections as connections_repo
from finledger.persistence.repos import cursors as cursors_repo
from finledger.persistence.repos import events as events_repo
from finledger.providers.base import AccountBalance
from finledger.providers.factory import override_provider
from finledger.providers.fake import FakeSyncProvider
from finledger.services.ledger import ingest
from finledger.services.receipts import receipted
from finledger.services.sync import engine as sync_engine
from finledger.services.sync.engine import fetch_balances, sync_connection
from finledger.services.telemetry import counters_snapshot
from finledger.tests.utils.finance import count_events, create_test_connection, fetch_receipts, page, sync_item


def _two_page_provider(**kwargs) -> FakeSyncProvider:
    return FakeSyncProvider(
        pages={
            None: page([sync_item("tx_2"), sync_item("tx_3", amount=-1200)], next_cursor="c1", has_more=True),
            "c1": page(next_cursor="c2", has_more=False),
        },
        **kwargs,
    )


async def _stored_cursor(connection_id: str) -> str | None:
    async with SessionLocal() as session:
        return await cursors_repo.get_cursor(session, connection_id=connection_id, stream=TRANSACTIONS_STREAM)


async def _status(connection_id: str) -> str:
    async with SessionLocal() as session:
        row = await connections_repo.get_connection(session, connection_id)
    return row.status


@pytest.mark.asyncio
async def test_ledger_and_cursor_end_to_end() -> None:
    connection = await create_test_connection()
    tenant = connection.tenant_id
    receipts_before = len(await fetch_receipts(tenant=tenant))

    event_a = {
        "tenant_id": tenant,
        "office_id": connection.office_id,
        "connection_id": None,
        "provider": "acme",
        "provider_event_id": "tx_1",
        "event_type": FinanceEventType.BANK_TX_POSTED,
        "occurred_at": datetime(2026, 9, 1, tzinfo=timezone.utc),
        "amount": -500,
        "currency": "usd",
        "status": "posted",
        "entity_refs": {"bank_tx_id": "tx_1"},
        "raw_hash": "0" * 64,
    }
    async with SessionLocal() as session:
        async with receipted(session, tenant_id=tenant, receipt_type="finance.event.ingested", action={"provider": "acme"}):
            first = await ingest(session, **event_a)
    assert first.written is True
    assert await count_events(tenant=tenant) == 1
    assert len(await fetch_receipts(tenant=tenant)) == receipts_before + 1

    async with SessionLocal() as session:
        second = await ingest(session, **event_a)
        await session.commit()
    assert second.written is False
    assert await count_events(tenant=tenant) == 1

    provider = _two_page_provider()
    result = await sync_connection(connection.id, provider=provider)
    assert result.pages == 2
    assert result.written == 2
    assert result.cursor == "c2"
    assert provider.calls == [None, "c1"]
    assert await count_events(tenant=tenant) == 3
    assert await _stored_cursor(connection.id) == "c2"


@pytest.mark.asyncio
async def test_interrupted_run_resumes_from_last_committed_page() -> None:
    connection = await create_test_connection()
    failing = _two_page_provider(fail_on={"c1"})

    with pytest.raises(UpstreamError):
        await sync_connection(connection.id, provider=failing)

    # Page one and its cursor were committed together before the failure.
    assert await _stored_cursor(connection.id) == "c1"
    assert await count_events(connection_id=connection.id) == 2
    assert await _status(connection.id) == "error"
    failed = await fetch_receipts(tenant=connection.tenant_id, receipt_type=RECEIPT_SYNC_EXECUTED)
    assert [receipt.status for receipt in failed] == ["FAILED"]
    assert failed[0].result_json["pages"] == 1
    assert counters_snapshot()["sync_runs_failed_total"] == 1

    retry = _two_page_provider()
    result = await sync_connection(connection.id, provider=retry)
    assert retry.calls == ["c1"]
    assert result.pages == 1
    assert await count_events(connection_id=connection.id) == 2
    assert await _stored_cursor(connection.id) == "c2"
    assert await _status(connection.id) == "connected"
    receipts = await fetch_receipts(tenant=connection.tenant_id, receipt_type=RECEIPT_SYNC_EXECUTED)
    assert [receipt.status for receipt in receipts] == ["FAILED", "SUCCEEDED"]


@pytest.mark.asyncio
async def test_cancelled_run_still_writes_one_failed_receipt() -> None:
    connection = await create_test_connection()
    provider = _two_page_provider(delays={"c1": 5.0})

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(sync_connection(connection.id, provider=provider), timeout=0.3)

    receipts = await fetch_receipts(tenant=connection.tenant_id, receipt_type=RECEIPT_SYNC_EXECUTED)
    assert [receipt.status for receipt in receipts] == ["FAILED"]
    assert receipts[0].result_json["error"]["type"] == "CancelledError"
    assert receipts[0].result_json["pages"] == 1
    assert await _status(connection.id) == "error"
    assert await _stored_cursor(connection.id) == "c1"
    assert await count_events(connection_id=connection.id) == 2
    assert counters_snapshot()["sync_runs_cancelled_total"] == 1
    assert sync_engine._connection_locks == {}


@pytest.mark.asyncio
async def test_concurrent_runs_for_one_connection_are_serialized() -> None:
    connection = await create_test_connection()
    provider = _two_page_provider(delays={None: 0.1, "c1": 0.1})

    first, second = await asyncio.gather(
        sync_connection(connection.id, provider=provider),
        sync_connection(connection.id, provider=provider),
    )

    # The second run waits for the first and resumes from its final cursor.
    assert provider.max_in_flight == 1
    assert provider.calls == [None, "c1", "c2"]
    assert (first.pages, first.written) == (2, 2)
    assert (second.pages, second.written) == (1, 0)
    assert await _stored_cursor(connection.id) == "c2"
    assert await count_events(connection_id=connection.id) == 2
    assert sync_engine._connection_locks == {}


@pytest.mark.asyncio
async def test_more_pages_without_a_cursor_fails_the_run() -> None:
    connection = await create_test_connection()
    provider = FakeSyncProvider(pages={None: page([sync_item("tx_1")], next_cursor="", has_more=True)})

    with pytest.raises(UpstreamError):
        await sync_connection(connection.id, provider=provider)

    assert provider.calls == [None]
    assert await _status(connection.id) == "error"
    assert await _stored_cursor(connection.id) is None


@pytest.mark.asyncio
async def test_replaying_the_same_pages_writes_nothing_new() -> None:
    connection = await create_test_connection()
    await sync_connection(connection.id, provider=_two_page_provider())
    async with SessionLocal() as session:
        await cursors_repo.delete_cursors(session, connection_id=connection.id)
        await session.commit()

    replay = _two_page_provider()
    result = await sync_connection(connection.id, provider=replay)
    assert replay.calls == [None, "c1"]
    assert result.added == 2
    assert result.written == 0
    assert await count_events(connection_id=connection.id) == 2


@pytest.mark.asyncio
async def test_modified_and_removed_transactions() -> None:
    connection = await create_test_connection()
    provider = FakeSyncProvider(
        pages={
            None: page([sync_item("tx_9", amount=-700)], next_cursor="c1", has_more=False),
            "c1": page(
                modified=[sync_item("tx_9", amount=-750)],
                removed=["tx_9"],
                next_cursor="c2",
                has_more=False,
            ),
        }
    )
    await sync_connection(connection.id, provider=provider)
    result = await sync_connection(connection.id, provider=provider)
    # The modification reuses the posting key; only the reversal is new.
    assert (result.modified, result.removed, result.written) == (1, 1, 1)

    async with SessionLocal() as session:
        rows = await events_repo.list_events(session, tenant_id=connection.tenant_id, limit=10)
    by_type = {}
    for row in rows:
        by_type.setdefault(row.event_type, []).append(row)
    (posting,) = by_type["bank_tx_posted"]
    assert posting.provider_event_id == "plaid_tx_tx_9"
    assert posting.amount == -700
    assert sum(row.amount for row in by_type["bank_tx_posted"]) == -700
    (reversal,) = by_type["bank_tx_reversed"]
    assert reversal.entity_refs_json["reverses_provider_event_id"] == "plaid_tx_tx_9"

    # Replaying the modified page lands nothing new.
    async with SessionLocal() as session:
        await cursors_repo.upsert_cursor(
            session, connection_id=connection.id, provider="plaid", stream=TRANSACTIONS_STREAM, cursor="c1"
        )
        await session.commit()
    replay = await sync_connection(connection.id, provider=provider)
    assert replay.written == 0


@pytest.mark.asyncio
async def test_modified_transaction_is_not_double_counted() -> None:
    connection = await create_test_connection()
    provider = FakeSyncProvider(
        pages={
            None: page([sync_item("tx_9", amount=-500)], next_cursor="c1", has_more=False),
            "c1": page(modified=[sync_item("tx_9", amount=-650)], next_cursor="c2", has_more=False),
        }
    )
    await sync_connection(connection.id, provider=provider)
    result = await sync_connection(connection.id, provider=provider)

    assert (result.modified, result.written) == (1, 0)
    assert await count_events(connection_id=connection.id) == 1
    assert counters_snapshot()["finance_events_duplicate_total"] == 1


@pytest.mark.asyncio
async def test_deadline_stops_at_a_page_boundary() -> None:
    connection = await create_test_connection()
    provider = _two_page_provider()
    with pytest.raises(SyncDeadlineExceededError):
        await sync_connection(connection.id, provider=provider, deadline_s=0.000001)
    assert provider.calls == [None]
    assert await _stored_cursor(connection.id) == "c1"
    assert await count_events(connection_id=connection.id) == 2
    assert counters_snapshot()["sync_runs_deadline_total"] == 1


@pytest.mark.asyncio
async def test_registered_provider_override_is_used() -> None:
    connection = await create_test_connection(access_token="access-from-vault")
    fake = _two_page_provider()
    override_provider("plaid", lambda: fake)
    await sync_connection(connection.id)
    assert fake.calls == [None, "c1"]
    assert fake.credentials_seen[0].access_token == "access-from-vault"
    assert fake.credentials_seen[0].connection_id == connection.id


@pytest.mark.asyncio
async def test_unknown_connection_raises() -> None:
    with pytest.raises(ConnectionNotFoundError):
        await sync_connection("missing-connection", provider=FakeSyncProvider())


@pytest.mark.asyncio
async def test_balances_are_recorded_once_per_account_per_day() -> None:
    connection = await create_test_connection()
    provider = FakeSyncProvider(
        balances=[
            AccountBalance(
                account_id="acc-1",
                name="Checking",
                account_type="depository",
                account_subtype="checking",
                current=150000,
                available=140000,
                limit=None,
                currency="usd",
            ),
            AccountBalance(
                account_id="acc-2",
                name="Card",
                account_type="credit",
                account_subtype="credit card",
                current=None,
                available=None,
                limit=500000,
                currency="usd",
            ),
        ]
    )
    first = await fetch_balances(connection.id, provider=provider)
    second = await fetch_balances(connection.id, provider=provider)
    assert (first.accounts, first.written) == (2, 2)
    assert (second.accounts, second.written) == (2, 0)

    async with SessionLocal() as session:
        rows = await events_repo.list_events(
            session, tenant_id=connection.tenant_id, event_type="bank_balance_updated", limit=10
        )
    amounts = sorted(row.amount for row in rows)
    assert amounts == [0, 150000]
    receipts = await fetch_receipts(tenant=connection.tenant_id, receipt_type=RECEIPT_BALANCE_FETCHED)
    assert [receipt.result_json["written"] for receipt in receipts] == [2, 0]
