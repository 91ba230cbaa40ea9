from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.core.errors import ConnectionNotFoundError
from finledger.domain.events import (
    RECEIPT_CONNECTION_CREATED,
    RECEIPT_CONNECTION_DISCONNECTED,
    RECEIPT_CREDENTIAL_ROTATED,
    ActorType,
    ConnectionStatus,
)
from finledger.domain.models import FinanceConnection
from finledger.persistence.db import SessionLocal
from finledger.persistence.repos import connections as connections_repo
from finledger.persistence.repos import cursors as cursors_repo
from finledger.services import vault
from finledger.services.receipts import receipted


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionRef:
    # Detached copy of the fields callers need after a session commits or rolls back.
    id: str
    tenant_id: str
    office_id: str
    provider: str
    external_account_id: str
    status: str

    @classmethod
    def from_row(cls, row: FinanceConnection) -> ConnectionRef:
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            office_id=row.office_id,
            provider=row.provider,
            external_account_id=row.external_account_id,
            status=row.status,
        )


async def create_connection(
    session: AsyncSession,
    *,
    tenant_id: str,
    office_id: str,
    provider: str,
    external_account_id: str,
    access_token: str,
    refresh_token: str | None = None,
    expires_at: datetime | None = None,
    scopes: list[str] | None = None,
    slot: str = "default",
    actor_type: ActorType | str = ActorType.USER,
    actor_id: str | None = None,
) -> ConnectionRef:
    # Re-authorizing the same tenant/office/provider slot updates the existing connection.
    action = {
        "provider": provider,
        "office_id": office_id,
        "slot": slot,
        "external_account_id": external_account_id,
        "scopes": scopes or [],
    }
    async with receipted(
        session,
        tenant_id=tenant_id,
        office_id=office_id,
        receipt_type=RECEIPT_CONNECTION_CREATED,
        action=action,
        actor_type=actor_type,
        actor_id=actor_id,
    ) as scope:
        row = await connections_repo.get_by_scope(
            session,
            tenant_id=tenant_id,
            office_id=office_id,
            provider=provider,
            slot=slot,
        )
        reauthorized = row is not None
        if row is None:
            row = FinanceConnection(
                id=str(uuid4()),
                tenant_id=tenant_id,
                office_id=office_id,
                provider=provider,
                slot=slot,
                external_account_id=external_account_id,
                status=ConnectionStatus.CONNECTED.value,
                scopes_json=scopes or [],
            )
            session.add(row)
            await session.flush()
        else:
            row.external_account_id = external_account_id
            row.status = ConnectionStatus.CONNECTED.value
            row.scopes_json = scopes or []
            await session.flush()
        stored = await vault.save_credential(
            session,
            connection_id=row.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        ref = ConnectionRef.from_row(row)
        scope.result.update(
            {
                "connection_id": ref.id,
                "reauthorized": reauthorized,
                "rotation_version": stored.rotation_version,
            }
        )
    logger.info(
        "connection_created connection_id=%s provider=%s tenant_id=%s reauthorized=%s",
        ref.id,
        provider,
        tenant_id,
        reauthorized,
    )
    return ref


async def get_connection(session: AsyncSession, connection_id: str) -> FinanceConnection:
    row = await connections_repo.get_connection(session, connection_id)
    if row is None:
        raise ConnectionNotFoundError(f"connection {connection_id} not found")
    return row


async def find_by_external_account(
    session: AsyncSession,
    *,
    provider: str,
    external_account_id: str,
) -> FinanceConnection | None:
    return await connections_repo.find_by_external_account(
        session, provider=provider, external_account_id=external_account_id
    )


async def list_connections(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    office_id: str | None = None,
    status: ConnectionStatus | str | None = None,
) -> list[FinanceConnection]:
    resolved_status = ConnectionStatus(status).value if status else None
    return await connections_repo.list_connections(
        session, tenant_id=tenant_id, office_id=office_id, status=resolved_status
    )


async def update_status(
    session: AsyncSession,
    connection_id: str,
    status: ConnectionStatus | str,
    *,
    commit: bool = True,
) -> None:
    resolved = ConnectionStatus(status).value
    updated = await connections_repo.set_status(session, connection_id, resolved)
    if not updated:
        raise ConnectionNotFoundError(f"connection {connection_id} not found")
    if commit:
        await session.commit()
    logger.info("connection_status_changed connection_id=%s status=%s", connection_id, resolved)


async def touch_connection(connection_id: str, *, field: str) -> bool:
    # Best-effort timestamp bump in its own session; failure is logged, never raised.
    async with SessionLocal() as touch_session:
        try:
            updated = await connections_repo.set_timestamp(touch_session, connection_id, field=field)
            await touch_session.commit()
        except SQLAlchemyError as exc:
            await touch_session.rollback()
            logger.warning(
                "connection_touch_failed connection_id=%s field=%s",
                connection_id,
                field,
                exc_info=exc,
            )
            return False
    return bool(updated)


async def rotate_connection_credential(
    session: AsyncSession,
    *,
    connection_id: str,
    access_token: str,
    refresh_token: str | None = None,
    expires_at: datetime | None = None,
    actor_type: ActorType | str = ActorType.SYSTEM,
    actor_id: str | None = None,
) -> int:
    connection = ConnectionRef.from_row(await get_connection(session, connection_id))
    async with receipted(
        session,
        tenant_id=connection.tenant_id,
        office_id=connection.office_id,
        receipt_type=RECEIPT_CREDENTIAL_ROTATED,
        action={"connection_id": connection.id, "refresh_token_supplied": refresh_token is not None},
        actor_type=actor_type,
        actor_id=actor_id,
    ) as scope:
        stored = await vault.rotate_credential(
            session,
            connection_id=connection.id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        scope.result["rotation_version"] = stored.rotation_version
    return stored.rotation_version


async def disconnect(
    session: AsyncSession,
    connection_id: str,
    *,
    actor_type: ActorType | str = ActorType.USER,
    actor_id: str | None = None,
) -> None:
    # Explicit disconnect is the only hard delete; vault entry and cursors go with it.
    connection = ConnectionRef.from_row(await get_connection(session, connection_id))
    async with receipted(
        session,
        tenant_id=connection.tenant_id,
        office_id=connection.office_id,
        receipt_type=RECEIPT_CONNECTION_DISCONNECTED,
        action={"connection_id": connection.id, "provider": connection.provider},
        actor_type=actor_type,
        actor_id=actor_id,
    ) as scope:
        credential_deleted = await vault.delete_credential(session, connection.id)
        cursors_deleted = await cursors_repo.delete_cursors(session, connection_id=connection.id)
        await connections_repo.delete_connection(session, connection.id)
        scope.result.update(
            {
                "credential_deleted": credential_deleted,
                "cursors_deleted": cursors_deleted,
                "status": ConnectionStatus.DISCONNECTED.value,
            }
        )
    logger.info("connection_disconnected connection_id=%s provider=%s", connection.id, connection.provider)
