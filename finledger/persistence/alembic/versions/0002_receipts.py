"""append-only receipts table

Revision ID: 0002_receipts
Revises: 0001_finance_core
Create Date: 2026-09-14
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_receipts"
down_revision = "0001_finance_core"
branch_labels = None
depends_on = None


# Only the seal columns may change after insert; rows are never deleted.
_IMMUTABILITY_FUNCTION = """
CREATE OR REPLACE FUNCTION receipts_enforce_immutability() RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'DELETE' THEN
        RAISE EXCEPTION 'receipts are append-only';
    END IF;
    IF (NEW.receipt_id, NEW.tenant_id, NEW.tenant_group_id, NEW.office_id, NEW.receipt_type,
        NEW.status, NEW.correlation_id, NEW.actor_type, NEW.actor_id, NEW.action_json,
        NEW.result_json, NEW.created_at, NEW.hash_alg)
       IS DISTINCT FROM
       (OLD.receipt_id, OLD.tenant_id, OLD.tenant_group_id, OLD.office_id, OLD.receipt_type,
        OLD.status, OLD.correlation_id, OLD.actor_type, OLD.actor_id, OLD.action_json,
        OLD.result_json, OLD.created_at, OLD.hash_alg) THEN
        RAISE EXCEPTION 'receipt % is immutable', OLD.receipt_id;
    END IF;
    IF OLD.receipt_hash IS NOT NULL AND NEW.receipt_hash IS DISTINCT FROM OLD.receipt_hash THEN
        RAISE EXCEPTION 'receipt % is already sealed', OLD.receipt_id;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""


def upgrade() -> None:
    op.create_table(
        "receipts",
        sa.Column("receipt_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("tenant_group_id", sa.String(), nullable=False),
        sa.Column("office_id", sa.String(), nullable=True),
        sa.Column("receipt_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action_json", postgresql.JSONB(), nullable=False),
        sa.Column("result_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hash_alg", sa.String(), nullable=False, server_default="sha256"),
        sa.Column("receipt_hash", sa.String(), nullable=True),
        sa.Column("signature", sa.String(), nullable=True),
        sa.Column("sealed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_receipts_tenant_created_at",
        "receipts",
        ["tenant_id", "office_id", sa.text("created_at DESC")],
        unique=False,
    )
    op.create_index("ix_receipts_correlation_id", "receipts", ["correlation_id"], unique=False)
    # Partial index keeps the sealing scan cheap as the table grows.
    op.create_index(
        "ix_receipts_receipt_hash_null",
        "receipts",
        ["created_at"],
        unique=False,
        postgresql_where=sa.text("receipt_hash IS NULL"),
    )
    op.execute(_IMMUTABILITY_FUNCTION)
    op.execute(
        "CREATE TRIGGER receipts_immutability BEFORE UPDATE OR DELETE ON receipts "
        "FOR EACH ROW EXECUTE FUNCTION receipts_enforce_immutability()"
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS receipts_immutability ON receipts")
    op.execute("DROP FUNCTION IF EXISTS receipts_enforce_immutability()")
    op.drop_index("ix_receipts_receipt_hash_null", table_name="receipts")
    op.drop_index("ix_receipts_correlation_id", table_name="receipts")
    op.drop_index("ix_receipts_tenant_created_at", table_name="receipts")
    op.drop_table("receipts")
