from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from finledger.domain.events import FinanceEventType
from finledger.providers.base import AccountBalance, RemovedItem, SyncItem
from finledger.services.crypto.utils import sha256_hex, stable_json
from finledger.services.ledger import IngestCommand


def transaction_event_id(provider: str, native_id: str) -> str:
    return f"{provider}_tx_{native_id}"


def removal_event_id(provider: str, native_id: str) -> str:
    # Distinct key so a removal is never conflated with the original posting.
    return f"{provider}_tx_removed_{native_id}"


def payload_hash(raw: dict[str, Any]) -> str:
    return sha256_hex(stable_json(raw))


def transaction_command(provider: str, item: SyncItem, *, modified: bool = False) -> IngestCommand:
    content_hash = payload_hash(item.raw or {"transaction_id": item.native_id, "amount": item.amount})
    # Modified items share the posting key, so a revision never lands as a second posting.
    return IngestCommand(
        provider=provider,
        provider_event_id=transaction_event_id(provider, item.native_id),
        event_type=FinanceEventType.BANK_TX_PENDING if item.pending else FinanceEventType.BANK_TX_POSTED,
        occurred_at=item.occurred_at,
        amount=item.amount,
        currency=item.currency,
        status="pending" if item.pending else "posted",
        entity_refs={
            "bank_tx_id": item.native_id,
            "account_id": item.account_id,
            "category": item.category,
        },
        raw_hash=content_hash,
        metadata={
            "name": item.name,
            "merchant_name": item.merchant_name,
            "payment_channel": item.payment_channel,
            "modified": modified,
        },
    )


def removal_command(provider: str, item: RemovedItem) -> IngestCommand:
    return IngestCommand(
        provider=provider,
        provider_event_id=removal_event_id(provider, item.native_id),
        event_type=FinanceEventType.BANK_TX_REVERSED,
        occurred_at=datetime.now(timezone.utc),
        amount=None,
        currency="usd",
        status="reversed",
        entity_refs={
            "bank_tx_id": item.native_id,
            "account_id": item.account_id,
            "reverses_provider_event_id": transaction_event_id(provider, item.native_id),
        },
        raw_hash=payload_hash({"transaction_id": item.native_id, "removed": True}),
        metadata=None,
    )


def balance_command(provider: str, balance: AccountBalance, *, as_of: datetime) -> IngestCommand:
    # One reading per account per UTC day.
    day = as_of.astimezone(timezone.utc).strftime("%Y-%m-%d")
    return IngestCommand(
        provider=provider,
        provider_event_id=f"{provider}_balance_{balance.account_id}_{day}",
        event_type=FinanceEventType.BANK_BALANCE_UPDATED,
        occurred_at=as_of,
        amount=balance.current if balance.current is not None else 0,
        currency=balance.currency,
        status="posted",
        entity_refs={
            "account_id": balance.account_id,
            "account_name": balance.name,
            "account_type": balance.account_type,
            "account_subtype": balance.account_subtype,
        },
        raw_hash=payload_hash(balance.raw or {"account_id": balance.account_id, "current": balance.current}),
        metadata={
            "available": balance.available,
            "current": balance.current,
            "limit": balance.limit,
        },
    )

