"""finance connections, credentials, events and sync cursors

Revision ID: 0001_finance_core
Revises:
Create Date: 2026-09-14
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_finance_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "finance_connections",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("office_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("slot", sa.String(), nullable=False, server_default="default"),
        sa.Column("external_account_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="connected"),
        sa.Column("scopes_json", postgresql.JSONB(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_webhook_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "office_id", "provider", "slot", name="uq_finance_connections_scope"),
    )
    op.create_index("ix_finance_connections_tenant_id", "finance_connections", ["tenant_id"], unique=False)
    op.create_index(
        "ix_finance_connections_provider_external",
        "finance_connections",
        ["provider", "external_account_id"],
        unique=False,
    )

    # Ciphertext only; the key never touches the database.
    op.create_table(
        "finance_credentials",
        sa.Column(
            "connection_id",
            sa.String(),
            sa.ForeignKey("finance_connections.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("access_token_enc", sa.Text(), nullable=False),
        sa.Column("refresh_token_enc", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rotation_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "finance_events",
        sa.Column("event_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("office_id", sa.String(), nullable=False),
        sa.Column("connection_id", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("entity_refs_json", postgresql.JSONB(), nullable=False),
        sa.Column("raw_hash", sa.String(), nullable=False),
        sa.Column("receipt_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Redelivered upstream events collide here and become no-ops.
        sa.UniqueConstraint(
            "tenant_id",
            "office_id",
            "provider",
            "provider_event_id",
            name="uq_finance_events_idempotency",
        ),
    )
    op.create_index(
        "ix_finance_events_tenant_occurred_at",
        "finance_events",
        ["tenant_id", "office_id", sa.text("occurred_at DESC")],
        unique=False,
    )
    op.create_index("ix_finance_events_connection_id", "finance_events", ["connection_id"], unique=False)

    op.create_table(
        "sync_cursors",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column(
            "connection_id",
            sa.String(),
            sa.ForeignKey("finance_connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("stream", sa.String(), nullable=False),
        sa.Column("cursor", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("connection_id", "stream", name="uq_sync_cursors_connection_stream"),
    )


def downgrade() -> None:
    op.drop_table("sync_cursors")
    op.drop_index("ix_finance_events_connection_id", table_name="finance_events")
    op.drop_index("ix_finance_events_tenant_occurred_at", table_name="finance_events")
    op.drop_table("finance_events")
    op.drop_table("finance_credentials")
    op.drop_index("ix_finance_connections_provider_external", table_name="finance_connections")
    op.drop_index("ix_finance_connections_tenant_id", table_name="finance_connections")
    op.drop_table("finance_connections")
