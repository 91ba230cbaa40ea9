from __future__ import annotations

import argparse
import asyncio
import getpass
import sys

from finledger.domain.events import ActorType
from finledger.persistence.db import SessionLocal
from finledger.services.connections import rotate_connection_credential


def _build_parser() -> argparse.ArgumentParser:
    # Tokens are read from a prompt so they never land in shell history.
    parser = argparse.ArgumentParser(description="Replace the stored provider tokens for a connection")
    parser.add_argument("connection_id", help="Connection whose credential is rotated")
    parser.add_argument("--with-refresh-token", action="store_true", help="Also prompt for a new refresh token")
    parser.add_argument("--actor-id", default="rotate_credential")
    return parser


async def _rotate(args: argparse.Namespace, access_token: str, refresh_token: str | None) -> int:
    async with SessionLocal() as session:
        version = await rotate_connection_credential(
            session,
            connection_id=args.connection_id,
            access_token=access_token,
            refresh_token=refresh_token,
            actor_type=ActorType.USER,
            actor_id=args.actor_id,
        )
    print("Credential rotated:")
    print(f"  connection_id: {args.connection_id}")
    print(f"  rotation_version: {version}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    access_token = getpass.getpass("access token: ").strip()
    if not access_token:
        print("rotate_credential failed: access token is required", file=sys.stderr)
        return 1
    refresh_token = None
    if args.with_refresh_token:
        refresh_token = getpass.getpass("refresh token: ").strip() or None
    try:
        return asyncio.run(_rotate(args, access_token, refresh_token))
    except Exception as exc:  # noqa: BLE001 - surface rotation failures clearly in CLI output.
        print(f"rotate_credential failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
