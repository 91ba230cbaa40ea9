from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, event, update
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.core.errors import CredentialNotFoundError
from finledger.domain.models import FinanceCredential
from finledger.services.crypto.cipher import get_token_cipher


logger = logging.getLogger(__name__)

INITIAL_ROTATION_VERSION = 1
# Keep decrypted tokens in memory only briefly; the vault row is the source of truth.
_CACHE_TTL_S = 60.0


@dataclass(frozen=True)
class StoredCredential:
    connection_id: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    rotation_version: int

    def handle(self) -> CredentialHandle:
        return CredentialHandle(
            connection_id=self.connection_id,
            access_token=self.access_token,
            rotation_version=self.rotation_version,
        )


@dataclass(frozen=True)
class CredentialHandle:
    # Explicit per-call credential passed into provider clients instead of process globals.
    connection_id: str
    access_token: str
    rotation_version: int

    def __repr__(self) -> str:
        return f"CredentialHandle(connection_id={self.connection_id!r}, rotation_version={self.rotation_version})"


def _aad(connection_id: str, field: str) -> bytes:
    # Bind each ciphertext to its connection and field so rows cannot be swapped.
    return f"{connection_id}:{field}".encode("utf-8")


def _encrypt(connection_id: str, field: str, value: str) -> str:
    return get_token_cipher().encrypt(value, aad=_aad(connection_id, field))


def _decrypt(connection_id: str, field: str, value: str) -> str:
    return get_token_cipher().decrypt(value, aad=_aad(connection_id, field))


def _to_stored(row: FinanceCredential) -> StoredCredential:
    return StoredCredential(
        connection_id=row.connection_id,
        access_token=_decrypt(row.connection_id, "access_token", row.access_token_enc),
        refresh_token=(
            _decrypt(row.connection_id, "refresh_token", row.refresh_token_enc)
            if row.refresh_token_enc
            else None
        ),
        expires_at=row.expires_at,
        rotation_version=row.rotation_version,
    )


async def save_credential(
    session: AsyncSession,
    *,
    connection_id: str,
    access_token: str,
    refresh_token: str | None = None,
    expires_at: datetime | None = None,
) -> StoredCredential:
    # Encrypt before touching the row so a missing key fails without side effects.
    access_enc = _encrypt(connection_id, "access_token", access_token)
    refresh_enc = _encrypt(connection_id, "refresh_token", refresh_token) if refresh_token else None
    existing = await session.get(FinanceCredential, connection_id)
    if existing is None:
        session.add(
            FinanceCredential(
                connection_id=connection_id,
                access_token_enc=access_enc,
                refresh_token_enc=refresh_enc,
                expires_at=expires_at,
                rotation_version=INITIAL_ROTATION_VERSION,
            )
        )
        await session.flush()
        _invalidate_cached(session, connection_id)
        logger.info("credential_saved connection_id=%s rotation_version=%s", connection_id, INITIAL_ROTATION_VERSION)
        return StoredCredential(
            connection_id=connection_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            rotation_version=INITIAL_ROTATION_VERSION,
        )
    # Replacing an existing token set counts as a rotation.
    return await _replace(
        session,
        connection_id=connection_id,
        access_enc=access_enc,
        refresh_enc=refresh_enc,
        expires_at=expires_at,
    )


async def load_credential(session: AsyncSession, connection_id: str) -> StoredCredential:
    row = await session.get(FinanceCredential, connection_id, populate_existing=True)
    if row is None:
        raise CredentialNotFoundError(f"no credential stored for connection {connection_id}")
    return _to_stored(row)


async def rotate_credential(
    session: AsyncSession,
    *,
    connection_id: str,
    access_token: str,
    refresh_token: str | None = None,
    expires_at: datetime | None = None,
) -> StoredCredential:
    access_enc = _encrypt(connection_id, "access_token", access_token)
    refresh_enc = _encrypt(connection_id, "refresh_token", refresh_token) if refresh_token else None
    return await _replace(
        session,
        connection_id=connection_id,
        access_enc=access_enc,
        refresh_enc=refresh_enc,
        expires_at=expires_at,
    )


async def _replace(
    session: AsyncSession,
    *,
    connection_id: str,
    access_enc: str,
    refresh_enc: str | None,
    expires_at: datetime | None,
) -> StoredCredential:
    # Increment in SQL so concurrent rotations never reuse a version number.
    values: dict[str, object] = {
        "access_token_enc": access_enc,
        "rotation_version": FinanceCredential.rotation_version + 1,
        "updated_at": datetime.now(timezone.utc),
    }
    # Rotation flows may omit an unchanged refresh token or expiry; keep the stored ones.
    if refresh_enc is not None:
        values["refresh_token_enc"] = refresh_enc
    if expires_at is not None:
        values["expires_at"] = expires_at
    result = await session.execute(
        update(FinanceCredential)
        .where(FinanceCredential.connection_id == connection_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise CredentialNotFoundError(f"no credential stored for connection {connection_id}")
    _invalidate_cached(session, connection_id)
    stored = await load_credential(session, connection_id)
    logger.info(
        "credential_rotated connection_id=%s rotation_version=%s",
        connection_id,
        stored.rotation_version,
    )
    return stored


async def delete_credential(session: AsyncSession, connection_id: str) -> bool:
    result = await session.execute(
        delete(FinanceCredential).where(FinanceCredential.connection_id == connection_id)
    )
    _invalidate_cached(session, connection_id)
    return bool(result.rowcount)


def _invalidate_cached(session: AsyncSession, connection_id: str) -> None:
    # Readers may reload the old committed row until this write commits, so drop again after commit.
    credential_cache.invalidate(connection_id)
    event.listen(
        session.sync_session,
        "after_commit",
        lambda _session: credential_cache.invalidate(connection_id),
        once=True,
    )


class CredentialCache:
    """Short-lived in-memory copy of decrypted credentials.

    Entries expire after a fixed TTL and are dropped explicitly whenever the
    vault row is replaced or deleted. A load that overlaps an invalidation is
    returned to its caller but never cached.
    """

    def __init__(self, ttl_s: float = _CACHE_TTL_S) -> None:
        self._ttl_s = ttl_s
        self._entries: dict[str, tuple[float, StoredCredential]] = {}
        self._generations: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, session: AsyncSession, connection_id: str) -> CredentialHandle:
        now = time.monotonic()
        async with self._lock:
            entry = self._entries.get(connection_id)
            if entry is not None and entry[0] > now:
                return entry[1].handle()
            generation = self._generations.get(connection_id, 0)
        stored = await load_credential(session, connection_id)
        async with self._lock:
            if self._generations.get(connection_id, 0) == generation:
                self._entries[connection_id] = (now + self._ttl_s, stored)
        return stored.handle()

    def invalidate(self, connection_id: str) -> None:
        self._entries.pop(connection_id, None)
        self._generations[connection_id] = self._generations.get(connection_id, 0) + 1

    def clear(self) -> None:
        self._entries.clear()
        self._generations.clear()


credential_cache = CredentialCache()
