from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
import sys
from typing import Any

from redis.asyncio import Redis
from sqlalchemy import text

from finledger.core.config import get_settings
from finledger.persistence.db import SessionLocal
from finledger.services.crypto.cipher import get_token_cipher
from finledger.services.sync.queue import get_worker_heartbeat


def _latest_revision() -> str | None:
    # Resolve repository head revision directly from migration files for deterministic checks.
    versions = sorted(Path("finledger/persistence/alembic/versions").glob("*.py"))
    if not versions:
        return None
    latest = versions[-1]
    for line in latest.read_text(encoding="utf-8").splitlines():
        if line.startswith("revision ="):
            return line.split("=", 1)[1].strip().strip('"')
    return None


async def _db_revision() -> str | None:
    async with SessionLocal() as session:
        return (await session.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))).scalar_one_or_none()


async def _check_redis() -> bool:
    # Redis only matters when syncs go through the queue.
    settings = get_settings()
    if settings.sync_execution_mode.lower() != "queue":
        return True
    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except Exception:  # noqa: BLE001 - reported as a failed check
        return False
    finally:
        await client.aclose()


def _check_encryption_key() -> tuple[bool, str | None]:
    # Load the cipher without printing anything about the key itself.
    try:
        get_token_cipher()
    except Exception as exc:  # noqa: BLE001 - reported as a failed check
        return False, type(exc).__name__
    return True, None


def _missing_webhook_secrets() -> list[str]:
    settings = get_settings()
    configured = {
        "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
        "GUSTO_WEBHOOK_SECRET": settings.gusto_webhook_secret,
        "QBO_WEBHOOK_VERIFIER_TOKEN": settings.qbo_webhook_verifier_token,
        "PLAID_CLIENT_ID": settings.plaid_client_id,
        "PLAID_SECRET": settings.plaid_secret,
    }
    return [name for name, value in configured.items() if not value]


async def run_preflight(*, output_json: str | None) -> int:
    settings = get_settings()
    results: list[dict[str, Any]] = []

    db_rev = await _db_revision()
    head_rev = _latest_revision()
    results.append(
        {
            "check": "alembic_current_matches_head",
            "status": "pass" if db_rev == head_rev else "fail",
            "detail": {"db_revision": db_rev, "head_revision": head_rev},
        }
    )

    missing_env = [name for name in ("DATABASE_URL", "TOKEN_ENCRYPTION_KEY") if not os.environ.get(name)]
    results.append(
        {
            "check": "required_env_present",
            "status": "pass" if not missing_env else "fail",
            "detail": {"missing": missing_env},
        }
    )

    key_ok, key_error = _check_encryption_key()
    results.append(
        {"check": "token_encryption_key_valid", "status": "pass" if key_ok else "fail", "detail": {"error": key_error}}
    )

    bypass_active = settings.webhook_verification_bypass and not settings.is_production
    results.append(
        {
            "check": "webhook_verification_enforced",
            "status": "warn" if bypass_active else "pass",
            "detail": {"environment": settings.environment},
        }
    )

    missing_secrets = _missing_webhook_secrets()
    results.append(
        {
            "check": "provider_secrets_present",
            "status": "warn" if missing_secrets else "pass",
            "detail": {"missing": missing_secrets},
        }
    )

    redis_ok = await _check_redis()
    results.append({"check": "redis_reachable", "status": "pass" if redis_ok else "fail", "detail": {}})

    heartbeat = await get_worker_heartbeat()
    results.append(
        {
            "check": "worker_heartbeat_present",
            "status": "pass" if heartbeat is not None else "warn",
            "detail": {"heartbeat": heartbeat.isoformat() if heartbeat else None},
        }
    )

    failed = [row for row in results if row["status"] == "fail"]
    summary = {
        "status": "pass" if not failed else "fail",
        "checks": results,
    }
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run deterministic deploy preflight checks.")
    parser.add_argument("--output-json", default="var/ops/preflight.json")
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
