from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import jwt

from finledger.core.config import get_settings
from finledger.core.errors import UpstreamError, WebhookVerificationError
from finledger.providers.plaid import PlaidClient
from finledger.services.crypto.utils import sha256_hex
from finledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PLAID_VERIFICATION_HEADER = "plaid-verification"
STRIPE_SIGNATURE_HEADER = "stripe-signature"
GUSTO_SIGNATURE_HEADER = "x-gusto-signature"
QBO_SIGNATURE_HEADER = "intuit-signature"

# Plaid signs webhook tokens with ES256 only; anything else is rejected before key lookup.
_PLAID_ALGORITHM = "ES256"

_key_cache: dict[str, tuple[float, dict[str, Any]]] = {}
_key_cache_lock = asyncio.Lock()


@dataclass(frozen=True)
class VerificationResult:
    # Reason codes are stable so operators can diagnose rejections without seeing payloads.
    ok: bool
    reason: str
    provider: str
    body_sha256: str
    key_id: str | None = None
    bypassed: bool = False


def _normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(key).strip().lower(): str(value).strip() for key, value in headers.items()}


def _reject(provider: str, reason: str, body_sha256: str, *, key_id: str | None = None) -> VerificationResult:
    increment_counter(f"webhook_verification_rejected_total.{provider}")
    logger.warning("webhook_verification_rejected provider=%s reason=%s key_id=%s", provider, reason, key_id)
    return VerificationResult(ok=False, reason=reason, provider=provider, body_sha256=body_sha256, key_id=key_id)


def _bypass_enabled() -> bool:
    # The bypass is opt-in and unreachable when the environment is production.
    settings = get_settings()
    if settings.is_production:
        return False
    return settings.webhook_verification_bypass


async def _fetch_verification_key(key_id: str) -> dict[str, Any]:
    # Fetch the provider's JWK for a key id.
    return await PlaidClient().webhook_verification_key(key_id)


async def _get_verification_key(key_id: str) -> dict[str, Any]:
    # Cache keys per key id so only the first webhook signed with a key pays the network call.
    ttl_s = get_settings().webhook_key_cache_ttl_s
    now = time.monotonic()
    cached = _key_cache.get(key_id)
    if cached is not None and cached[0] > now:
        return cached[1]
    async with _key_cache_lock:
        cached = _key_cache.get(key_id)
        if cached is not None and cached[0] > now:
            return cached[1]
        jwk = await _fetch_verification_key(key_id)
        _key_cache[key_id] = (now + ttl_s, jwk)
        return jwk


def clear_key_cache() -> None:
    _key_cache.clear()


def _jwk_to_key(jwk: dict[str, Any]) -> Any:
    # Convert a JWK payload into a cryptography key for PyJWT.
    return jwt.algorithms.ECAlgorithm.from_jwk(json.dumps(jwk))


async def verify_plaid(headers: Mapping[str, str], body: bytes) -> VerificationResult:
    provider = "plaid"
    body_sha256 = sha256_hex(body)
    token = _normalize_headers(headers).get(PLAID_VERIFICATION_HEADER)
    if not token:
        return _reject(provider, "missing_signature_header", body_sha256)
    # Nothing in the token is trusted until the signature verifies.
    if len(token.split(".")) != 3:
        return _reject(provider, "malformed_token", body_sha256)
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError:
        return _reject(provider, "malformed_token", body_sha256)
    if header.get("alg") != _PLAID_ALGORITHM:
        return _reject(provider, "unsupported_algorithm", body_sha256)
    key_id = header.get("kid")
    if not key_id:
        return _reject(provider, "missing_key_id", body_sha256)

    try:
        jwk = await _get_verification_key(str(key_id))
    except UpstreamError as exc:
        reason = "unknown_key_id" if exc.status_code in {400, 404} else "key_fetch_failed"
        return _reject(provider, reason, body_sha256, key_id=key_id)
    except KeyError:
        return _reject(provider, "unknown_key_id", body_sha256, key_id=key_id)
    expired_at = jwk.get("expired_at")
    if expired_at is not None and int(expired_at) <= int(time.time()):
        return _reject(provider, "key_expired", body_sha256, key_id=key_id)

    try:
        claims = jwt.decode(
            token,
            _jwk_to_key(jwk),
            algorithms=[_PLAID_ALGORITHM],
            options={"require": ["iat"], "verify_aud": False},
        )
    except jwt.InvalidSignatureError:
        return _reject(provider, "signature_mismatch", body_sha256, key_id=key_id)
    except (jwt.InvalidTokenError, ValueError):
        return _reject(provider, "invalid_token", body_sha256, key_id=key_id)

    max_age_s = get_settings().webhook_max_token_age_s
    if max_age_s > 0 and int(time.time()) - int(claims["iat"]) > max_age_s:
        return _reject(provider, "token_expired", body_sha256, key_id=key_id)
    claimed_hash = claims.get("request_body_sha256")
    # Hash the exact raw bytes received, never a re-serialization.
    if not isinstance(claimed_hash, str) or not hmac.compare_digest(claimed_hash, body_sha256):
        return _reject(provider, "body_hash_mismatch", body_sha256, key_id=key_id)
    return VerificationResult(ok=True, reason="verified", provider=provider, body_sha256=body_sha256, key_id=key_id)


def _hmac_sha256(secret: str, payload: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()


def _parse_stripe_header(value: str) -> tuple[int | None, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in value.split(","):
        key, _, item = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(item)
            except ValueError:
                timestamp = None
        elif key == "v1" and item:
            signatures.append(item)
    return timestamp, signatures


async def verify_stripe(headers: Mapping[str, str], body: bytes) -> VerificationResult:
    provider = "stripe"
    body_sha256 = sha256_hex(body)
    settings = get_settings()
    header = _normalize_headers(headers).get(STRIPE_SIGNATURE_HEADER)
    if not header:
        return _reject(provider, "missing_signature_header", body_sha256)
    if not settings.stripe_webhook_secret:
        return _reject(provider, "secret_not_configured", body_sha256)
    timestamp, signatures = _parse_stripe_header(header)
    if timestamp is None or not signatures:
        return _reject(provider, "malformed_signature_header", body_sha256)
    expected = _hmac_sha256(settings.stripe_webhook_secret, f"{timestamp}.".encode("utf-8") + body).hex()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        return _reject(provider, "signature_mismatch", body_sha256)
    tolerance = settings.stripe_webhook_tolerance_s
    if tolerance > 0 and abs(int(time.time()) - timestamp) > tolerance:
        return _reject(provider, "timestamp_outside_tolerance", body_sha256)
    return VerificationResult(ok=True, reason="verified", provider=provider, body_sha256=body_sha256)


async def verify_gusto(headers: Mapping[str, str], body: bytes) -> VerificationResult:
    provider = "gusto"
    body_sha256 = sha256_hex(body)
    secret = get_settings().gusto_webhook_secret
    signature = _normalize_headers(headers).get(GUSTO_SIGNATURE_HEADER)
    if not signature:
        return _reject(provider, "missing_signature_header", body_sha256)
    if not secret:
        return _reject(provider, "secret_not_configured", body_sha256)
    expected = _hmac_sha256(secret, body).hex()
    if not hmac.compare_digest(expected, signature.lower()):
        return _reject(provider, "signature_mismatch", body_sha256)
    return VerificationResult(ok=True, reason="verified", provider=provider, body_sha256=body_sha256)


async def verify_qbo(headers: Mapping[str, str], body: bytes) -> VerificationResult:
    provider = "qbo"
    body_sha256 = sha256_hex(body)
    verifier_token = get_settings().qbo_webhook_verifier_token
    signature = _normalize_headers(headers).get(QBO_SIGNATURE_HEADER)
    if not signature:
        return _reject(provider, "missing_signature_header", body_sha256)
    if not verifier_token:
        return _reject(provider, "secret_not_configured", body_sha256)
    expected = base64.b64encode(_hmac_sha256(verifier_token, body)).decode("ascii")
    if not hmac.compare_digest(expected, signature):
        return _reject(provider, "signature_mismatch", body_sha256)
    return VerificationResult(ok=True, reason="verified", provider=provider, body_sha256=body_sha256)


_VERIFIERS: dict[str, Callable[[Mapping[str, str], bytes], Awaitable[VerificationResult]]] = {
    "plaid": verify_plaid,
    "stripe": verify_stripe,
    "gusto": verify_gusto,
    "qbo": verify_qbo,
}


async def verify_webhook(provider: str, headers: Mapping[str, str], body: bytes) -> VerificationResult:
    """Authenticate one inbound webhook against the exact raw body bytes."""
    body_sha256 = sha256_hex(body)
    verifier = _VERIFIERS.get(provider)
    if verifier is None:
        return _reject(provider, "unsupported_provider", body_sha256)
    if _bypass_enabled():
        logger.warning(
            "webhook_verification_bypassed provider=%s environment=%s",
            provider,
            get_settings().environment,
        )
        return VerificationResult(
            ok=True,
            reason="bypassed",
            provider=provider,
            body_sha256=body_sha256,
            bypassed=True,
        )
    return await verifier(headers, body)


async def require_verified(provider: str, headers: Mapping[str, str], body: bytes) -> VerificationResult:
    result = await verify_webhook(provider, headers, body)
    if not result.ok:
        raise WebhookVerificationError(result.reason)
    return result
