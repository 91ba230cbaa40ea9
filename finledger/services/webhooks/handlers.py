from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from finledger.core.config import get_settings
from finledger.domain.events import RECEIPT_WEBHOOK_INGESTED, ActorType, ConnectionStatus
from finledger.services import connections as connections_service
from finledger.services.connections import ConnectionRef
from finledger.services.ledger import ingest_command
from finledger.services.receipts import receipted
from finledger.services.sync.queue import enqueue_sync
from finledger.services.telemetry import increment_counter
from finledger.services.webhooks.payloads import PlaidWebhook, parse_webhook
from finledger.services.webhooks.verification import VerificationResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    handled: bool
    event_key: str
    written: int = 0
    duplicates: int = 0
    receipt_id: str | None = None
    connection_id: str | None = None
    sync_enqueued: bool = False
    event_types: list[str] = field(default_factory=list)


async def handle_webhook(
    session: AsyncSession,
    *,
    provider: str,
    body: bytes,
    verification: VerificationResult,
) -> WebhookOutcome:
    """Ingest one verified webhook.

    Callers must verify first; this function assumes ``verification.ok``.
    Unknown or malformed payloads are acknowledged with ``handled=False``.
    """
    if not verification.ok:
        raise ValueError("handle_webhook requires a verified request")
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.info("webhook_body_not_json provider=%s", provider)
        return WebhookOutcome(handled=False, event_key="invalid_json")

    webhook = parse_webhook(provider, payload)
    commands = webhook.to_commands(body_sha256=verification.body_sha256)
    if not commands:
        increment_counter(f"webhooks_unhandled_total.{provider}")
        logger.info("webhook_unhandled_type provider=%s event_key=%s", provider, webhook.event_key)
        return WebhookOutcome(handled=False, event_key=webhook.event_key)

    connection: ConnectionRef | None = None
    external_id = webhook.external_account_id
    if external_id:
        row = await connections_service.find_by_external_account(
            session, provider=provider, external_account_id=external_id
        )
        connection = ConnectionRef.from_row(row) if row is not None else None
    settings = get_settings()
    # Events for unresolved upstream items still land, under the default scope.
    tenant_id = connection.tenant_id if connection else settings.default_tenant_id
    office_id = connection.office_id if connection else settings.default_office_id
    connection_id = connection.id if connection else None

    written = 0
    duplicates = 0
    async with receipted(
        session,
        tenant_id=tenant_id,
        office_id=office_id,
        receipt_type=RECEIPT_WEBHOOK_INGESTED,
        action={
            "provider": provider,
            "event_key": webhook.event_key,
            "external_account_id": external_id,
            "body_sha256": verification.body_sha256,
            "verification": verification.reason,
        },
        actor_type=ActorType.SYSTEM,
        actor_id=provider,
    ) as scope:
        for command in commands:
            result = await ingest_command(
                session,
                command,
                tenant_id=tenant_id,
                office_id=office_id,
                connection_id=connection_id,
                receipt_id=scope.receipt_id,
            )
            if result.written:
                written += 1
            else:
                duplicates += 1
        scope.result.update(
            {
                "connection_id": connection_id,
                "provider_event_ids": [command.provider_event_id for command in commands],
                "written": written,
                "duplicates": duplicates,
            }
        )

    sync_enqueued = False
    if connection is not None:
        await connections_service.touch_connection(connection.id, field="last_webhook_at")
        if isinstance(webhook, PlaidWebhook) and webhook.is_item_error:
            await connections_service.update_status(session, connection.id, ConnectionStatus.ERROR)
        if webhook.triggers_sync:
            sync_enqueued = await _trigger_sync(connection.id, event_key=webhook.event_key)

    logger.info(
        "webhook_processed provider=%s event_key=%s written=%s duplicates=%s connection_id=%s",
        provider,
        webhook.event_key,
        written,
        duplicates,
        connection_id,
    )
    return WebhookOutcome(
        handled=True,
        event_key=webhook.event_key,
        written=written,
        duplicates=duplicates,
        receipt_id=scope.receipt_id,
        connection_id=connection_id,
        sync_enqueued=sync_enqueued,
        event_types=[command.event_type.value for command in commands],
    )


async def _trigger_sync(connection_id: str, *, event_key: str) -> bool:
    # The webhook is already durable; a failed enqueue is logged and left for the scheduler.
    try:
        await enqueue_sync(connection_id, trigger=f"webhook:{event_key}", wait=False)
    except Exception as exc:  # noqa: BLE001 - enqueue failure must not fail the webhook response
        logger.warning("webhook_sync_enqueue_failed connection_id=%s", connection_id, exc_info=exc)
        return False
    return True
