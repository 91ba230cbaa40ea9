from __future__ import annotations

import asyncio
import hmac
import hashlib
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from finledger.core.config import get_settings
from finledger.core.errors import TenantScopeMissingError
from finledger.domain.events import (
    RECEIPT_SYNC_EXECUTED,
    RECEIPT_WEBHOOK_INGESTED,
    ActorType,
    ReceiptStatus,
)
from finledger.domain.models import Receipt
from finledger.persistence.repos import receipts as receipts_repo
from finledger.services.crypto.utils import decode_key_material, hash_hex, stable_json


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["access_token", "refresh_token", "authorization", "secret", "password", "api_key"]
_REDACTED_VALUE = "[REDACTED]"

# Older call sites name their action with a short verb; map the known ones onto dotted receipt types.
_LEGACY_ACTION_TYPES = {
    "ingest_webhook": RECEIPT_WEBHOOK_INGESTED,
    "sync_pull": RECEIPT_SYNC_EXECUTED,
    "compute_snapshot": "finance.snapshot.computed",
    "propose_action": "finance.action.proposed",
    "execute_action": "finance.action.executed",
}


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_payload(value: Any) -> Any:
    # Recursively scrub secrets while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_payload(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(item) for item in value]
    return value


def _to_json_document(value: dict[str, Any] | None) -> dict[str, Any]:
    # Store exactly what the canonical hash will later read back from the database.
    return json.loads(stable_json(sanitize_payload(value or {})))


def _format_timestamp(value: datetime) -> str:
    # Some drivers return naive datetimes; receipts are always written in UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def canonical_receipt_bytes(receipt: Receipt) -> bytes:
    # Hash input covers every immutable field and excludes the seal columns.
    document = {
        "receipt_id": receipt.receipt_id,
        "tenant_id": receipt.tenant_id,
        "tenant_group_id": receipt.tenant_group_id,
        "office_id": receipt.office_id,
        "receipt_type": receipt.receipt_type,
        "status": receipt.status,
        "correlation_id": receipt.correlation_id,
        "actor_type": receipt.actor_type,
        "actor_id": receipt.actor_id,
        "action": receipt.action_json,
        "result": receipt.result_json,
        "created_at": _format_timestamp(receipt.created_at),
        "hash_alg": receipt.hash_alg,
    }
    return stable_json(document)


def compute_receipt_hash(receipt: Receipt) -> str:
    return hash_hex(canonical_receipt_bytes(receipt), algorithm=receipt.hash_alg or "sha256")


def _signing_key() -> bytes | None:
    raw = get_settings().receipt_signing_key
    if not raw:
        return None
    return decode_key_material(raw)


def _sign(receipt_hash: str, key: bytes) -> str:
    return hmac.new(key, receipt_hash.encode("ascii"), hashlib.sha256).hexdigest()


async def write_receipt(
    session: AsyncSession,
    *,
    tenant_id: str,
    receipt_type: str,
    status: ReceiptStatus | str,
    actor_type: ActorType | str,
    action: dict[str, Any],
    result: dict[str, Any],
    office_id: str | None = None,
    correlation_id: str | None = None,
    actor_id: str | None = None,
    tenant_group_id: str | None = None,
    receipt_id: str | None = None,
    commit: bool = False,
) -> str:
    # Append one receipt row; hash and signature are filled later by the sealing step.
    if not tenant_id:
        raise TenantScopeMissingError("receipt requires a tenant scope")
    resolved_status = ReceiptStatus(status).value
    resolved_actor = ActorType(actor_type).value
    resolved_id = receipt_id or str(uuid4())
    receipt = Receipt(
        receipt_id=resolved_id,
        tenant_id=tenant_id,
        tenant_group_id=tenant_group_id or tenant_id,
        office_id=office_id,
        receipt_type=receipt_type,
        status=resolved_status,
        # A receipt without an explicit chain starts its own.
        correlation_id=correlation_id or resolved_id,
        actor_type=resolved_actor,
        actor_id=actor_id,
        action_json=_to_json_document(action),
        result_json=_to_json_document(result),
        created_at=datetime.now(timezone.utc),
        hash_alg=get_settings().receipt_hash_alg,
    )
    session.add(receipt)
    if commit:
        await session.commit()
    else:
        await session.flush()
    logger.info(
        "receipt_written receipt_id=%s receipt_type=%s status=%s tenant_id=%s",
        resolved_id,
        receipt_type,
        resolved_status,
        tenant_id,
    )
    return resolved_id


@dataclass
class ReceiptScope:
    # Mutable holder the governed operation fills in before the receipt is written.
    receipt_id: str
    correlation_id: str
    result: dict[str, Any] = field(default_factory=dict)


@asynccontextmanager
async def receipted(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    receipt_type: str,
    action: dict[str, Any],
    office_id: str | None = None,
    actor_type: ActorType | str = ActorType.SYSTEM,
    actor_id: str | None = None,
    correlation_id: str | None = None,
) -> AsyncIterator[ReceiptScope]:
    """Write exactly one receipt for the wrapped operation.

    Normal exit records SUCCEEDED together with the operation's pending writes
    in one commit. An exception rolls back the operation's uncommitted work,
    records FAILED with the error detail, and re-raises. Cancellation is recorded
    as FAILED too, with the write shielded from a second cancel. A missing
    tenant scope records DENIED under the default tenant and raises before the body runs.
    """
    receipt_id = str(uuid4())
    scope = ReceiptScope(receipt_id=receipt_id, correlation_id=correlation_id or receipt_id)
    if not tenant_id:
        settings = get_settings()
        await write_receipt(
            session,
            tenant_id=settings.default_tenant_id,
            office_id=office_id,
            receipt_type=receipt_type,
            status=ReceiptStatus.DENIED,
            correlation_id=scope.correlation_id,
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            result={"error": "tenant_scope_missing"},
            receipt_id=receipt_id,
            commit=True,
        )
        raise TenantScopeMissingError(f"{receipt_type} requires a tenant scope")
    fields: dict[str, Any] = {
        "tenant_id": tenant_id,
        "office_id": office_id,
        "receipt_type": receipt_type,
        "actor_type": actor_type,
        "actor_id": actor_id,
        "action": action,
    }
    try:
        yield scope
    except asyncio.CancelledError as exc:
        # The caller is being torn down; finish the receipt write even if cancelled again.
        logger.warning("receipted_operation_cancelled receipt_id=%s receipt_type=%s", receipt_id, receipt_type)
        await asyncio.shield(_record_failure(session, scope, exc, **fields))
        raise
    except Exception as exc:
        await _record_failure(session, scope, exc, **fields)
        raise
    await write_receipt(
        session,
        **fields,
        status=ReceiptStatus.SUCCEEDED,
        correlation_id=scope.correlation_id,
        result=scope.result,
        receipt_id=receipt_id,
        commit=True,
    )


async def _record_failure(
    session: AsyncSession,
    scope: ReceiptScope,
    exc: BaseException,
    **fields: Any,
) -> None:
    # Drop the operation's uncommitted work before the FAILED receipt is committed.
    await session.rollback()
    await write_receipt(
        session,
        **fields,
        status=ReceiptStatus.FAILED,
        correlation_id=scope.correlation_id,
        result={**scope.result, "error": {"type": type(exc).__name__, "message": str(exc)}},
        receipt_id=scope.receipt_id,
        commit=True,
    )


@dataclass(frozen=True)
class LegacyReceipt:
    receipt_type: str
    action: dict[str, Any]
    result: dict[str, Any]


def adapt_legacy_receipt(
    *,
    action_type: str,
    inputs: Any,
    outputs: Any,
    metadata: dict[str, Any] | None = None,
    policy_decision_id: str | None = None,
) -> LegacyReceipt:
    # Nest the legacy fields inside action/result; the receipt shape itself never changes.
    action: dict[str, Any] = {"legacy_action_type": action_type, "inputs": inputs}
    if policy_decision_id:
        action["policy_decision_id"] = policy_decision_id
    result: dict[str, Any] = {"outputs": outputs}
    if metadata:
        result["metadata"] = metadata
    receipt_type = _LEGACY_ACTION_TYPES.get(action_type, f"legacy.{action_type}")
    return LegacyReceipt(receipt_type=receipt_type, action=action, result=result)


async def write_legacy_receipt(
    session: AsyncSession,
    *,
    tenant_id: str,
    office_id: str | None,
    action_type: str,
    inputs: Any,
    outputs: Any,
    metadata: dict[str, Any] | None = None,
    policy_decision_id: str | None = None,
    commit: bool = False,
) -> str:
    adapted = adapt_legacy_receipt(
        action_type=action_type,
        inputs=inputs,
        outputs=outputs,
        metadata=metadata,
        policy_decision_id=policy_decision_id,
    )
    return await write_receipt(
        session,
        tenant_id=tenant_id,
        office_id=office_id,
        receipt_type=adapted.receipt_type,
        status=ReceiptStatus.SUCCEEDED,
        actor_type=ActorType.SYSTEM,
        action=adapted.action,
        result=adapted.result,
        commit=commit,
    )


async def seal_pending_receipts(session: AsyncSession, *, batch_size: int | None = None) -> int:
    # Populate hash and signature on unsealed receipts; nothing else is ever written back.
    limit = batch_size or get_settings().receipt_seal_batch_size
    pending = await receipts_repo.list_unsealed(session, limit=limit)
    if not pending:
        return 0
    key = _signing_key()
    now = datetime.now(timezone.utc)
    for receipt in pending:
        receipt_hash = compute_receipt_hash(receipt)
        receipt.receipt_hash = receipt_hash
        receipt.signature = _sign(receipt_hash, key) if key else None
        receipt.sealed_at = now
    await session.commit()
    logger.info("receipts_sealed count=%s signed=%s", len(pending), key is not None)
    return len(pending)


@dataclass(frozen=True)
class ReceiptVerification:
    receipt_id: str
    status: str
    reason: str | None = None


def verify_receipt(receipt: Receipt) -> ReceiptVerification:
    # An unsealed receipt is pending, not invalid.
    if receipt.receipt_hash is None:
        return ReceiptVerification(receipt_id=receipt.receipt_id, status="pending", reason="not_sealed")
    expected = compute_receipt_hash(receipt)
    if not hmac.compare_digest(expected, receipt.receipt_hash):
        logger.warning("receipt_hash_mismatch receipt_id=%s", receipt.receipt_id)
        return ReceiptVerification(receipt_id=receipt.receipt_id, status="invalid", reason="hash_mismatch")
    if receipt.signature is None:
        return ReceiptVerification(receipt_id=receipt.receipt_id, status="valid")
    key = _signing_key()
    if key is None:
        return ReceiptVerification(receipt_id=receipt.receipt_id, status="valid", reason="signature_not_checked")
    if not hmac.compare_digest(_sign(receipt.receipt_hash, key), receipt.signature):
        logger.warning("receipt_signature_mismatch receipt_id=%s", receipt.receipt_id)
        return ReceiptVerification(receipt_id=receipt.receipt_id, status="invalid", reason="signature_mismatch")
    return ReceiptVerification(receipt_id=receipt.receipt_id, status="valid")
