from __future__ import annotations

import hashlib
import time

import jwt
import pytest

from finledger.core.config import get_settings
from finledger.core.errors import UpstreamError, WebhookVerificationError
from finledger.services.telemetry import counters_snapshot
from finledger.services.webhooks import verification
from finledger.services.webhooks.verification import require_verified, verify_webhook
from finledger.tests.utils.signing import PlaidSigner, gusto_signature, qbo_signature, stripe_signature

BODY = b'{"webhook_type":"TRANSACTIONS","webhook_code":"SYNC_UPDATES_AVAILABLE","item_id":"item-1"}'


@pytest.fixture
def signer(monkeypatch: pytest.MonkeyPatch) -> PlaidSigner:
    signer = PlaidSigner()
    fetched: list[str] = []

    async def _fake_fetch(key_id: str) -> dict:
        fetched.append(key_id)
        if key_id != signer.key_id:
            raise KeyError(key_id)
        return signer.jwk()

    monkeypatch.setattr(verification, "_fetch_verification_key", _fake_fetch)
    signer.fetched = fetched
    return signer


@pytest.mark.asyncio
async def test_plaid_valid_token_verifies(signer: PlaidSigner) -> None:
    result = await verify_webhook("plaid", {"Plaid-Verification": signer.token(BODY)}, BODY)
    assert result.ok
    assert result.reason == "verified"
    assert result.key_id == signer.key_id
    assert result.body_sha256 == hashlib.sha256(BODY).hexdigest()


@pytest.mark.asyncio
async def test_plaid_verification_key_is_cached(signer: PlaidSigner) -> None:
    for _ in range(3):
        result = await verify_webhook("plaid", {"plaid-verification": signer.token(BODY)}, BODY)
        assert result.ok
    assert signer.fetched == [signer.key_id]


@pytest.mark.asyncio
async def test_plaid_body_hash_must_match_raw_bytes(signer: PlaidSigner) -> None:
    token = signer.token(BODY)
    # Same JSON, different bytes.
    reformatted = BODY.replace(b'","', b'", "')
    result = await verify_webhook("plaid", {"plaid-verification": token}, reformatted)
    assert not result.ok
    assert result.reason == "body_hash_mismatch"
    assert counters_snapshot()["webhook_verification_rejected_total.plaid"] == 1


@pytest.mark.asyncio
async def test_plaid_missing_header_is_rejected(signer: PlaidSigner) -> None:
    result = await verify_webhook("plaid", {}, BODY)
    assert result.reason == "missing_signature_header"
    assert signer.fetched == []


@pytest.mark.asyncio
async def test_plaid_malformed_token_is_rejected(signer: PlaidSigner) -> None:
    result = await verify_webhook("plaid", {"plaid-verification": "not-a-jwt"}, BODY)
    assert result.reason == "malformed_token"


@pytest.mark.asyncio
async def test_plaid_unknown_key_id_is_rejected(signer: PlaidSigner) -> None:
    result = await verify_webhook("plaid", {"plaid-verification": signer.token(BODY, key_id="rotated-away")}, BODY)
    assert not result.ok
    assert result.reason == "unknown_key_id"
    assert result.key_id == "rotated-away"


@pytest.mark.asyncio
async def test_plaid_key_fetch_failure_is_distinguished(monkeypatch: pytest.MonkeyPatch) -> None:
    signer = PlaidSigner()

    async def _failing_fetch(key_id: str) -> dict:
        raise UpstreamError("plaid unavailable", status_code=503)

    monkeypatch.setattr(verification, "_fetch_verification_key", _failing_fetch)
    result = await verify_webhook("plaid", {"plaid-verification": signer.token(BODY)}, BODY)
    assert result.reason == "key_fetch_failed"


@pytest.mark.asyncio
async def test_plaid_rejects_non_es256_tokens_before_key_lookup(signer: PlaidSigner) -> None:
    claims = {"iat": int(time.time()), "request_body_sha256": hashlib.sha256(BODY).hexdigest()}
    token = jwt.encode(claims, "a-shared-secret-that-is-long-enough-for-hs256", algorithm="HS256", headers={"kid": signer.key_id})
    result = await verify_webhook("plaid", {"plaid-verification": token}, BODY)
    assert result.reason == "unsupported_algorithm"
    assert signer.fetched == []


@pytest.mark.asyncio
async def test_plaid_signature_from_another_key_is_rejected(signer: PlaidSigner) -> None:
    impostor = PlaidSigner(key_id=signer.key_id)
    result = await verify_webhook("plaid", {"plaid-verification": impostor.token(BODY)}, BODY)
    assert result.reason == "signature_mismatch"


@pytest.mark.asyncio
async def test_plaid_expired_key_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    signer = PlaidSigner()

    async def _fetch(key_id: str) -> dict:
        return signer.jwk(expired_at=int(time.time()) - 60)

    monkeypatch.setattr(verification, "_fetch_verification_key", _fetch)
    result = await verify_webhook("plaid", {"plaid-verification": signer.token(BODY)}, BODY)
    assert result.reason == "key_expired"


@pytest.mark.asyncio
async def test_plaid_stale_token_is_rejected(signer: PlaidSigner) -> None:
    token = signer.token(BODY, issued_at=int(time.time()) - 3600)
    result = await verify_webhook("plaid", {"plaid-verification": token}, BODY)
    assert result.reason == "token_expired"


@pytest.mark.asyncio
async def test_require_verified_raises_with_reason(signer: PlaidSigner) -> None:
    with pytest.raises(WebhookVerificationError) as excinfo:
        await require_verified("plaid", {"plaid-verification": signer.token(b"{}")}, BODY)
    assert excinfo.value.reason == "body_hash_mismatch"


@pytest.mark.asyncio
async def test_unsupported_provider_is_rejected() -> None:
    result = await verify_webhook("venmo", {}, BODY)
    assert not result.ok
    assert result.reason == "unsupported_provider"


@pytest.mark.asyncio
async def test_bypass_applies_outside_production(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_VERIFICATION_BYPASS", "true")
    get_settings.cache_clear()
    result = await verify_webhook("plaid", {}, BODY)
    assert result.ok
    assert result.bypassed


@pytest.mark.asyncio
async def test_bypass_is_ignored_in_production(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_VERIFICATION_BYPASS", "true")
    monkeypatch.setenv("ENVIRONMENT", "production")
    get_settings.cache_clear()
    result = await verify_webhook("plaid", {}, BODY)
    assert not result.ok
    assert result.reason == "missing_signature_header"


@pytest.fixture
def provider_secrets(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    secrets = {"stripe": "whsec_test", "gusto": "gusto-secret", "qbo": "qbo-verifier"}
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", secrets["stripe"])
    monkeypatch.setenv("GUSTO_WEBHOOK_SECRET", secrets["gusto"])
    monkeypatch.setenv("QBO_WEBHOOK_VERIFIER_TOKEN", secrets["qbo"])
    get_settings.cache_clear()
    return secrets


@pytest.mark.asyncio
async def test_stripe_signature(provider_secrets: dict[str, str]) -> None:
    header = stripe_signature(provider_secrets["stripe"], BODY)
    assert (await verify_webhook("stripe", {"Stripe-Signature": header}, BODY)).ok

    tampered = await verify_webhook("stripe", {"Stripe-Signature": header}, BODY + b" ")
    assert tampered.reason == "signature_mismatch"

    old = stripe_signature(provider_secrets["stripe"], BODY, timestamp=int(time.time()) - 3600)
    stale = await verify_webhook("stripe", {"Stripe-Signature": old}, BODY)
    assert stale.reason == "timestamp_outside_tolerance"

    malformed = await verify_webhook("stripe", {"Stripe-Signature": "v1=abc"}, BODY)
    assert malformed.reason == "malformed_signature_header"


@pytest.mark.asyncio
async def test_stripe_without_secret_fails_closed() -> None:
    header = stripe_signature("whsec_test", BODY)
    result = await verify_webhook("stripe", {"stripe-signature": header}, BODY)
    assert result.reason == "secret_not_configured"


@pytest.mark.asyncio
async def test_gusto_signature(provider_secrets: dict[str, str]) -> None:
    signature = gusto_signature(provider_secrets["gusto"], BODY)
    assert (await verify_webhook("gusto", {"X-Gusto-Signature": signature}, BODY)).ok
    result = await verify_webhook("gusto", {"X-Gusto-Signature": gusto_signature("wrong", BODY)}, BODY)
    assert result.reason == "signature_mismatch"


@pytest.mark.asyncio
async def test_qbo_signature(provider_secrets: dict[str, str]) -> None:
    signature = qbo_signature(provider_secrets["qbo"], BODY)
    assert (await verify_webhook("qbo", {"intuit-signature": signature}, BODY)).ok
    result = await verify_webhook("qbo", {"intuit-signature": signature}, b"{}")
    assert result.reason == "signature_mismatch"
