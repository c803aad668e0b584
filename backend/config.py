"""Environment-driven settings for the Minah backend."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 8080
    mongodb_uri: str = "mongodb://localhost:27017/minah"
    mongodb_database: str = "minah"
    network: str = "testnet"
    rpc_url: str = "https://soroban-testnet.stellar.org:443"
    contract_id: str = ""
    owner_secret_key: str = ""
    owner_public_key: str = ""
    mint_secret_key: str = ""
    mint_public_key: str = ""
    usdc_contract_id: str = ""
    usdc_decimals: int = 7
    usdc_asset_code: str = "USDC"
    usdc_asset_issuer: str = ""
    base_fee: int = 100
    tx_timeout: int = 30
    finality_timeout: float = 60.0
    finality_poll_initial: float = 1.0
    finality_poll_max: float = 8.0
    api_key: Optional[str] = None
    rate_limit: int = 120
    rate_limit_window: int = 60
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        network = os.getenv("STELLAR_NETWORK", "testnet").strip().lower() or "testnet"
        if network not in {"testnet", "mainnet"}:
            raise ValueError(f"STELLAR_NETWORK must be testnet or mainnet, got {network!r}")
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8080),
            mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017/minah"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "minah"),
            network=network,
            rpc_url=os.getenv("STELLAR_RPC_URL", "https://soroban-testnet.stellar.org:443"),
            contract_id=os.getenv("MINAH_CONTRACT_ID", ""),
            owner_secret_key=os.getenv("STELLAR_OWNER_SECRET_KEY", ""),
            owner_public_key=os.getenv("STELLAR_OWNER_PUBLIC_KEY", ""),
            mint_secret_key=os.getenv("STELLAR_MINT_SECRET_KEY", ""),
            mint_public_key=os.getenv("STELLAR_MINT_PUBLIC_KEY", ""),
            usdc_contract_id=os.getenv("USDC_CONTRACT_ID", ""),
            usdc_decimals=_env_int("USDC_DECIMALS", 7),
            usdc_asset_code=os.getenv("USDC_ASSET_CODE", "USDC"),
            usdc_asset_issuer=os.getenv("USDC_ASSET_ISSUER", ""),
            base_fee=_env_int("STELLAR_BASE_FEE", 100),
            tx_timeout=_env_int("STELLAR_TX_TIMEOUT", 30),
            finality_timeout=_env_float("FINALITY_TIMEOUT", 60.0),
            finality_poll_initial=_env_float("FINALITY_POLL_INITIAL", 1.0),
            finality_poll_max=_env_float("FINALITY_POLL_MAX", 8.0),
            api_key=os.getenv("API_KEY") or None,
            rate_limit=_env_int("RATE_LIMIT", 120),
            rate_limit_window=_env_int("RATE_LIMIT_WINDOW", 60),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


__all__ = ["Settings"]
