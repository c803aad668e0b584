"""Mint NFTs to the configured minter account.

Usage::

    minah-mint 5

The script reads the NFT price from the contract, checks the minter's
stablecoin balance, approves the contract to spend the total cost and mints.
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from backend.config import Settings
from backend.server import LOG_FORMAT
from backend.stellar import ContractError, SorobanContractClient, validate_address

LOGGER = logging.getLogger("minah.backend.mint")
RULE = "=" * 60


def _positive_int(raw: str) -> int:
    try:
        value = int(raw, 10)
    except ValueError:
        raise argparse.ArgumentTypeError("amount must be a positive number")
    if value <= 0:
        raise argparse.ArgumentTypeError("amount must be a positive number")
    return value


def main(argv: Optional[Sequence[str]] = None, client: Optional[SorobanContractClient] = None) -> int:
    parser = argparse.ArgumentParser(prog="minah-mint", description="Mint Minah NFTs to the minter account")
    parser.add_argument("amount", type=_positive_int, help="number of NFTs to mint")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    user_address = settings.mint_public_key
    if not validate_address(user_address):
        LOGGER.error("Invalid Stellar address for the minter: %r", user_address)
        return 1

    print(RULE)
    print("Minah NFT Minting Script")
    print(RULE)
    print(f"User Address: {user_address}")
    print(f"Amount: {args.amount}")
    print(RULE)

    client = client or SorobanContractClient(settings)
    try:
        transaction_hash = client.mint_nft(user_address, args.amount)
    except (ContractError, ValueError) as exc:
        print(RULE, file=sys.stderr)
        print("Minting failed", file=sys.stderr)
        print(f"Error: {exc}", file=sys.stderr)
        print(RULE, file=sys.stderr)
        return 1

    print(RULE)
    print("Minting successful")
    print(f"Transaction Hash: {transaction_hash}")
    print(f"View on Stellar Expert: https://stellar.expert/explorer/{settings.network}/tx/{transaction_hash}")
    print(RULE)
    return 0


if __name__ == "__main__":
    sys.exit(main())
