"""Off-chain investor and vault profiles backed by MongoDB."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, MongoClient, monitoring
from pymongo.errors import DuplicateKeyError

LOGGER = logging.getLogger("minah.backend.store")

INVESTOR_FIELDS = (
    "autoFuel",
    "walletAddress",
    "InternalwalletAddress",
    "vaultID",
    "issuer",
    "nationality",
    "first_name",
    "last_name",
    "address",
    "profilePicture",
    "email",
    "investor",
    "loginCount",
    "accountVerified",
    "totalAmountInvested",
    "amountInvested",
    "lastLoginAt",
    "createdAt",
)
VAULT_FIELDS = (
    "walletAddress",
    "InternalwalletAddress",
    "vaultID",
    "assetID",
    "name",
    "vaultAddress",
)
# Alternate request shape: {stellarAddress, email, firstName, lastName}.
INVESTOR_ALIASES = {
    "stellarAddress": "walletAddress",
    "firstName": "first_name",
    "lastName": "last_name",
}
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ProfileConflict(Exception):
    """Raised when a unique profile key is already taken."""

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message or f"{field} already registered")


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    value = str(email).strip().lower()
    return value or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _public_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, dict):
        return {key: _public_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_public_value(item) for item in value]
    return value


def to_public(document: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    """Render a stored document as the JSON shape returned by the API."""

    record: Dict[str, Any] = {"id": _public_value(document.get("_id"))}
    for field in fields:
        record[field] = _public_value(document.get(field))
    return record


def _prune(document: Dict[str, Any]) -> Dict[str, Any]:
    # Partial unique indexes cover every string, so blank keys must stay absent.
    return {key: value for key, value in document.items() if value is not None and value != ""}


def build_investor_document(payload: Dict[str, Any]) -> Dict[str, Any]:
    source = dict(payload)
    for alias, field in INVESTOR_ALIASES.items():
        if not source.get(field) and source.get(alias):
            source[field] = source[alias]
    document = {field: source.get(field) for field in INVESTOR_FIELDS}
    document["email"] = normalize_email(document.get("email"))
    document["loginCount"] = int(document.get("loginCount") or 0)
    document["accountVerified"] = bool(document.get("accountVerified") or False)
    if document.get("createdAt") is None:
        document["createdAt"] = _utcnow()
    return _prune(document)


def build_vault_document(payload: Dict[str, Any]) -> Dict[str, Any]:
    return _prune({field: payload.get(field) for field in VAULT_FIELDS})


class ConnectionLogger(monitoring.ServerListener):
    """Logs server topology changes so reconnects show up in the logs."""

    def opened(self, event: monitoring.ServerOpeningEvent) -> None:
        LOGGER.info("MongoDB: monitoring server %s", event.server_address)

    def description_changed(self, event: monitoring.ServerDescriptionChangedEvent) -> None:
        previous = event.previous_description.server_type_name
        current = event.new_description.server_type_name
        if previous == current:
            return
        if current == "Unknown":
            LOGGER.warning("MongoDB: disconnected from %s", event.server_address)
        else:
            LOGGER.info("MongoDB: connected to %s (%s)", event.server_address, current)

    def closed(self, event: monitoring.ServerClosedEvent) -> None:
        LOGGER.info("MongoDB: stopped monitoring %s", event.server_address)


class ProfileStore:
    """Investor and vault collections with index-enforced uniqueness."""

    def __init__(self, database: Any, client: Optional[MongoClient] = None) -> None:
        self._db = database
        self._client = client
        self.investors = database["investors"]
        self.vaults = database["vaults"]

    @classmethod
    def connect(cls, uri: str, database: str = "minah", **client_kwargs: Any) -> "ProfileStore":
        client: MongoClient = MongoClient(uri, event_listeners=[ConnectionLogger()], **client_kwargs)
        db = client.get_default_database(default=database)
        LOGGER.info("MongoDB: using database %s", db.name)
        store = cls(db, client)
        store.ensure_indexes()
        return store

    def ensure_indexes(self) -> None:
        self.investors.create_index(
            [("walletAddress", ASCENDING)],
            name="uniq_wallet_address",
            unique=True,
            partialFilterExpression={"walletAddress": {"$type": "string"}},
        )
        self.investors.create_index(
            [("email", ASCENDING)],
            name="uniq_email",
            unique=True,
            partialFilterExpression={"email": {"$type": "string"}},
        )
        self.vaults.create_index(
            [("vaultID", ASCENDING)],
            name="uniq_vault_id",
            unique=True,
            partialFilterExpression={"vaultID": {"$type": "string"}},
        )

    @staticmethod
    def _conflict_field(exc: DuplicateKeyError, candidates: Iterable[str]) -> str:
        details = exc.details or {}
        key_value = details.get("keyValue") or {}
        for field in candidates:
            if field in key_value:
                return field
        message = str(details.get("errmsg") or exc)
        for field in candidates:
            if field in message:
                return field
        return next(iter(candidates))

    def create_investor(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        document = build_investor_document(payload)
        try:
            result = self.investors.insert_one(document)
        except DuplicateKeyError as exc:
            field = self._conflict_field(exc, ("email", "walletAddress"))
            label = "Email" if field == "email" else "Wallet address"
            raise ProfileConflict(field, f"{label} already registered") from exc
        document["_id"] = result.inserted_id
        return to_public(document, INVESTOR_FIELDS)

    def attach_transaction(self, investor_id: str, tx_hash: str) -> None:
        self.investors.update_one(
            {"_id": ObjectId(investor_id)},
            {"$set": {"transactionHash": tx_hash, "registeredAt": _utcnow()}},
        )

    def discard_investor(self, investor_id: str) -> None:
        """Drop a profile whose on-chain registration never happened."""

        self.investors.delete_one({"_id": ObjectId(investor_id), "transactionHash": {"$exists": False}})

    def create_vault(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        document = build_vault_document(payload)
        try:
            result = self.vaults.insert_one(document)
        except DuplicateKeyError as exc:
            raise ProfileConflict("vaultID", "Vault ID already registered") from exc
        document["_id"] = result.inserted_id
        return to_public(document, VAULT_FIELDS)

    def list_investors(self) -> List[Dict[str, Any]]:
        return [to_public(doc, INVESTOR_FIELDS) for doc in self.investors.find({})]

    def count_investors(self) -> int:
        return int(self.investors.count_documents({}))

    def get_investor(self, investor_id: str) -> Optional[Dict[str, Any]]:
        if not ObjectId.is_valid(investor_id):
            return None
        document = self.investors.find_one({"_id": ObjectId(investor_id)})
        return to_public(document, INVESTOR_FIELDS) if document else None

    def find_investor_by_wallet(self, wallet: str) -> Optional[Dict[str, Any]]:
        document = self.investors.find_one({"walletAddress": wallet})
        return to_public(document, INVESTOR_FIELDS) if document else None

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


__all__ = [
    "EMAIL_PATTERN",
    "INVESTOR_FIELDS",
    "ProfileConflict",
    "ProfileStore",
    "VAULT_FIELDS",
    "build_investor_document",
    "build_vault_document",
    "normalize_email",
    "to_public",
]
