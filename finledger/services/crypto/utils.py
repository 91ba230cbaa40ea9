from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any


def decode_key_material(value: str) -> bytes:
    """Decode base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def b64url_decode(value: str) -> bytes:
    # JWT segments are unpadded base64url.
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


def sha256_hex(value: bytes) -> str:
    return hashlib.sha256(value).hexdigest()


def hash_hex(value: bytes, *, algorithm: str = "sha256") -> str:
    # Restrict to the SHA-2 family so declared algorithms cannot downgrade integrity checks.
    normalized = algorithm.strip().lower().replace("-", "")
    if normalized not in {"sha256", "sha384", "sha512"}:
        raise ValueError(f"unsupported hash algorithm: {algorithm}")
    return hashlib.new(normalized, value).hexdigest()


def stable_json(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")
