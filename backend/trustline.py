"""Add the stablecoin trustline for the owner or minter account."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from backend.config import Settings
from backend.server import LOG_FORMAT
from backend.stellar import ContractError, SorobanContractClient

LOGGER = logging.getLogger("minah.backend.trustline")
RULE = "=" * 60


def main(argv: Optional[Sequence[str]] = None, client: Optional[SorobanContractClient] = None) -> int:
    parser = argparse.ArgumentParser(prog="minah-trustline", description="Add the stablecoin trustline")
    parser.add_argument("role", choices=("owner", "minter"))
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    if args.role == "owner":
        address, secret = settings.owner_public_key, settings.owner_secret_key
    else:
        address, secret = settings.mint_public_key, settings.mint_secret_key
    if not secret:
        LOGGER.error("No secret key configured for the %s account", args.role)
        return 1

    print(RULE)
    print("Minah Add trustline Script")
    print(RULE)
    print(f"User Address: {address}")
    print(f"Role: {args.role}")
    print(RULE)

    client = client or SorobanContractClient(settings)
    try:
        transaction_hash = client.change_trustline(secret)
    except (ContractError, ValueError) as exc:
        print(f"Adding trustline failed: {exc}", file=sys.stderr)
        return 1

    print("Trustline added successfully")
    print(f"Address: {address}")
    print(f"Transaction Hash: {transaction_hash}")
    print(RULE)
    return 0


if __name__ == "__main__":
    sys.exit(main())
