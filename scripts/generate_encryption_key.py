from __future__ import annotations

from finledger.services.crypto.cipher import generate_key_material


def main() -> int:
    # Print a fresh key; store it in the secret manager, never in the repo.
    print(f"TOKEN_ENCRYPTION_KEY={generate_key_material()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
