from __future__ import annotations

import argparse
import asyncio
import sys

from finledger.core.logging import configure_logging
from finledger.services.sync.engine import fetch_balances, sync_connection


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one sync for a connection in this process")
    parser.add_argument("--connection-id", required=True)
    parser.add_argument("--deadline-s", type=float, default=None, help="stop at the next page boundary after this")
    parser.add_argument("--balances", action="store_true", help="also fetch account balances")
    return parser


async def _run(connection_id: str, deadline_s: float | None, balances: bool) -> int:
    result = await sync_connection(connection_id, deadline_s=deadline_s, trigger="cli")
    print(
        f"pages={result.pages} added={result.added} modified={result.modified} "
        f"removed={result.removed} written={result.written}"
    )
    if balances:
        balance_result = await fetch_balances(connection_id, trigger="cli")
        print(f"accounts={balance_result.accounts} balances_written={balance_result.written}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args.connection_id, args.deadline_s, args.balances))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"run_sync failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
