from __future__ import annotations

import argparse
import asyncio
import sys

from finledger.core.config import get_settings
from finledger.persistence.db import SessionLocal
from finledger.services.receipts import seal_pending_receipts


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seal pending receipts with their canonical hash")
    parser.add_argument("--batch-size", type=int, default=None, help="receipts per batch")
    parser.add_argument("--all", action="store_true", help="keep sealing until nothing is pending")
    return parser


async def _seal(batch_size: int | None, drain: bool) -> int:
    total = 0
    async with SessionLocal() as session:
        while True:
            sealed = await seal_pending_receipts(session, batch_size=batch_size)
            total += sealed
            if not drain or sealed == 0:
                break
    print(f"sealed_receipts={total} signed={bool(get_settings().receipt_signing_key)}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_seal(args.batch_size, args.all))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"seal_receipts failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
