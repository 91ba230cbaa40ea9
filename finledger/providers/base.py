from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from finledger.services.vault import CredentialHandle


def to_minor_units(value: Any) -> int:
    # Convert a major-unit decimal amount to integer cents without float rounding drift.
    if value is None:
        return 0
    quantized = (Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(quantized)


@dataclass(frozen=True)
class SyncItem:
    native_id: str
    account_id: str | None
    amount: int
    currency: str
    pending: bool
    occurred_at: datetime
    category: list[str] | str | None = None
    name: str | None = None
    merchant_name: str | None = None
    payment_channel: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RemovedItem:
    native_id: str
    account_id: str | None = None


@dataclass(frozen=True)
class SyncPage:
    added: list[SyncItem]
    modified: list[SyncItem]
    removed: list[RemovedItem]
    next_cursor: str
    has_more: bool


@dataclass(frozen=True)
class AccountBalance:
    account_id: str
    name: str | None
    account_type: str | None
    account_subtype: str | None
    current: int | None
    available: int | None
    limit: int | None
    currency: str
    raw: dict[str, Any] = field(default_factory=dict)


class SyncProvider(Protocol):
    name: str

    async def transactions_sync(self, credential: CredentialHandle, *, cursor: str | None) -> SyncPage:
        ...

    async def account_balances(self, credential: CredentialHandle) -> list[AccountBalance]:
        ...
