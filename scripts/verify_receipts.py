from __future__ import annotations

import argparse
import asyncio
import sys

from finledger.persistence.db import SessionLocal
from finledger.persistence.repos import receipts as receipts_repo
from finledger.services.receipts import verify_receipt


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recompute receipt hashes and signatures")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--office-id", default=None)
    parser.add_argument("--limit", type=int, default=200)
    return parser


async def _verify(tenant_id: str, office_id: str | None, limit: int) -> int:
    counts = {"valid": 0, "pending": 0, "invalid": 0}
    async with SessionLocal() as session:
        receipts = await receipts_repo.list_receipts(
            session, tenant_id=tenant_id, office_id=office_id, limit=limit
        )
        for receipt in receipts:
            outcome = verify_receipt(receipt)
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
            if outcome.status == "invalid":
                print(f"invalid receipt_id={outcome.receipt_id} reason={outcome.reason}")
    print(" ".join(f"{key}={value}" for key, value in counts.items()))
    # Non-zero exit lets cron alerting pick up tampering.
    return 2 if counts["invalid"] else 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_verify(args.tenant_id, args.office_id, args.limit))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"verify_receipts failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
