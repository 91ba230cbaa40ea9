from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from finledger.core.errors import ReceiptImmutableError


# Use JSONB on Postgres while keeping the schema portable to sqlite for local runs.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class FinanceConnection(Base):
    __tablename__ = "finance_connections"
    __table_args__ = (
        # One connection per tenant/office/provider; distinct slots opt into multiplexing.
        UniqueConstraint("tenant_id", "office_id", "provider", "slot", name="uq_finance_connections_scope"),
        Index("ix_finance_connections_provider_external", "provider", "external_account_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    office_id: Mapped[str] = mapped_column(String)
    provider: Mapped[str] = mapped_column(String)
    slot: Mapped[str] = mapped_column(String, default="default", nullable=False)
    # Upstream item/account id used to resolve inbound webhooks.
    external_account_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="connected", nullable=False)
    scopes_json: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_webhook_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class FinanceCredential(Base):
    __tablename__ = "finance_credentials"

    # Bound 1:1 to a connection; ciphertexts only, key material lives in settings.
    connection_id: Mapped[str] = mapped_column(
        String, ForeignKey("finance_connections.id", ondelete="CASCADE"), primary_key=True
    )
    access_token_enc: Mapped[str] = mapped_column(Text)
    refresh_token_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rotation_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class FinanceEvent(Base):
    __tablename__ = "finance_events"
    __table_args__ = (
        # Idempotency key: redelivered upstream events collide here and become no-ops.
        UniqueConstraint(
            "tenant_id",
            "office_id",
            "provider",
            "provider_event_id",
            name="uq_finance_events_idempotency",
        ),
        Index("ix_finance_events_tenant_occurred_at", "tenant_id", "office_id", "occurred_at"),
        Index("ix_finance_events_connection_id", "connection_id"),
    )

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    office_id: Mapped[str] = mapped_column(String)
    # Nullable so webhooks for unresolved connections still land in the ledger.
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider: Mapped[str] = mapped_column(String)
    provider_event_id: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Signed minor currency units; null for non-monetary events.
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String)
    entity_refs_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    raw_hash: Mapped[str] = mapped_column(String)
    receipt_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SyncCursor(Base):
    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("connection_id", "stream", name="uq_sync_cursors_connection_stream"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    connection_id: Mapped[str] = mapped_column(
        String, ForeignKey("finance_connections.id", ondelete="CASCADE")
    )
    provider: Mapped[str] = mapped_column(String)
    stream: Mapped[str] = mapped_column(String)
    cursor: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Receipt(Base):
    __tablename__ = "receipts"
    __table_args__ = (
        Index("ix_receipts_tenant_created_at", "tenant_id", "office_id", "created_at"),
        Index("ix_receipts_correlation_id", "correlation_id"),
        Index("ix_receipts_receipt_hash_null", "created_at", postgresql_where=text("receipt_hash IS NULL")),
    )

    receipt_id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    # Grouping id spanning related tenants; defaults to the tenant id.
    tenant_group_id: Mapped[str] = mapped_column(String)
    office_id: Mapped[str | None] = mapped_column(String, nullable=True)
    receipt_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    correlation_id: Mapped[str] = mapped_column(String)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    result_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    hash_alg: Mapped[str] = mapped_column(String, default="sha256", nullable=False)
    # Populated later by the sealing step; never part of the hashed content.
    receipt_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    signature: Mapped[str | None] = mapped_column(String, nullable=True)
    sealed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# Columns a sealing pass may populate after the receipt row is written.
RECEIPT_MUTABLE_FIELDS = frozenset({"receipt_hash", "signature", "sealed_at"})


@event.listens_for(Receipt, "before_update")
def _guard_receipt_immutability(_mapper, _connection, target: Receipt) -> None:
    # Reject ORM flushes that touch anything other than the seal columns.
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if attr.key in RECEIPT_MUTABLE_FIELDS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise ReceiptImmutableError(f"receipt field '{attr.key}' is immutable")
