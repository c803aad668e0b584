import unittest
from datetime import datetime, timezone
from unittest import mock

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from backend.store import (
    INVESTOR_FIELDS,
    ProfileConflict,
    ProfileStore,
    build_investor_document,
    build_vault_document,
    normalize_email,
    to_public,
)


def _duplicate(field: str, value: str) -> DuplicateKeyError:
    return DuplicateKeyError(
        f"E11000 duplicate key error collection: minah.investors index: {field}_1",
        11000,
        {"keyValue": {field: value}},
    )


class DocumentTests(unittest.TestCase):
    def test_investor_defaults(self) -> None:
        document = build_investor_document({"walletAddress": "GABC", "email": "  Ana@Example.COM "})
        self.assertEqual(document["email"], "ana@example.com")
        self.assertEqual(document["loginCount"], 0)
        self.assertFalse(document["accountVerified"])
        self.assertIsInstance(document["createdAt"], datetime)
        self.assertNotIn("vaultID", document)

    def test_alternate_shape_is_accepted(self) -> None:
        document = build_investor_document(
            {"stellarAddress": "GXYZ", "email": "x@y.io", "firstName": "Ana", "lastName": "Lima"}
        )
        self.assertEqual(document["walletAddress"], "GXYZ")
        self.assertEqual(document["first_name"], "Ana")
        self.assertEqual(document["last_name"], "Lima")
        self.assertNotIn("stellarAddress", document)

    def test_blank_wallet_uses_alias_and_never_stores_empty_keys(self) -> None:
        document = build_investor_document({"walletAddress": "", "stellarAddress": "GXYZ"})
        self.assertEqual(document["walletAddress"], "GXYZ")
        document = build_investor_document({"walletAddress": "", "email": "a@b.io", "vaultID": ""})
        self.assertNotIn("walletAddress", document)
        self.assertNotIn("vaultID", document)
        self.assertEqual(build_vault_document({"vaultID": "", "name": "Main"}), {"name": "Main"})

    def test_unknown_fields_are_dropped(self) -> None:
        document = build_investor_document({"walletAddress": "GABC", "isAdmin": True})
        self.assertNotIn("isAdmin", document)
        vault = build_vault_document({"vaultID": "v1", "name": "Main", "owner": "x"})
        self.assertEqual(vault, {"vaultID": "v1", "name": "Main"})

    def test_normalize_email(self) -> None:
        self.assertIsNone(normalize_email(None))
        self.assertIsNone(normalize_email("   "))
        self.assertEqual(normalize_email("A@B.C"), "a@b.c")

    def test_to_public_renders_ids_and_dates(self) -> None:
        oid = ObjectId()
        created = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        record = to_public({"_id": oid, "email": "a@b.c", "createdAt": created}, INVESTOR_FIELDS)
        self.assertEqual(record["id"], str(oid))
        self.assertEqual(record["createdAt"], "2024-05-01T12:30:00Z")
        self.assertIsNone(record["walletAddress"])
        self.assertNotIn("_id", record)


class ProfileStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.investors = mock.Mock()
        self.vaults = mock.Mock()
        self.store = ProfileStore({"investors": self.investors, "vaults": self.vaults})

    def test_indexes_are_partial_and_unique(self) -> None:
        self.store.ensure_indexes()
        names = {call.kwargs["name"] for call in self.investors.create_index.call_args_list}
        self.assertEqual(names, {"uniq_wallet_address", "uniq_email"})
        for call in self.investors.create_index.call_args_list + self.vaults.create_index.call_args_list:
            self.assertTrue(call.kwargs["unique"])
            self.assertIn("partialFilterExpression", call.kwargs)

    def test_create_investor_returns_public_record(self) -> None:
        oid = ObjectId()
        self.investors.insert_one.return_value = mock.Mock(inserted_id=oid)
        record = self.store.create_investor({"walletAddress": "GABC", "email": "A@B.io"})
        self.assertEqual(record["id"], str(oid))
        self.assertEqual(record["email"], "a@b.io")
        inserted = self.investors.insert_one.call_args.args[0]
        self.assertEqual(inserted["walletAddress"], "GABC")

    def test_duplicate_email_maps_to_conflict(self) -> None:
        self.investors.insert_one.side_effect = _duplicate("email", "a@b.io")
        with self.assertRaises(ProfileConflict) as ctx:
            self.store.create_investor({"walletAddress": "GABC", "email": "a@b.io"})
        self.assertEqual(ctx.exception.field, "email")
        self.assertEqual(str(ctx.exception), "Email already registered")

    def test_duplicate_wallet_maps_to_conflict(self) -> None:
        self.investors.insert_one.side_effect = _duplicate("walletAddress", "GABC")
        with self.assertRaises(ProfileConflict) as ctx:
            self.store.create_investor({"walletAddress": "GABC", "email": "a@b.io"})
        self.assertEqual(ctx.exception.field, "walletAddress")
        self.assertEqual(str(ctx.exception), "Wallet address already registered")

    def test_duplicate_vault(self) -> None:
        self.vaults.insert_one.side_effect = _duplicate("vaultID", "v1")
        with self.assertRaises(ProfileConflict) as ctx:
            self.store.create_vault({"vaultID": "v1"})
        self.assertEqual(str(ctx.exception), "Vault ID already registered")

    def test_discard_only_removes_unregistered_profile(self) -> None:
        oid = ObjectId()
        self.store.discard_investor(str(oid))
        self.investors.delete_one.assert_called_once_with({"_id": oid, "transactionHash": {"$exists": False}})

    def test_attach_transaction(self) -> None:
        oid = ObjectId()
        self.store.attach_transaction(str(oid), "hash-1")
        query, update = self.investors.update_one.call_args.args
        self.assertEqual(query, {"_id": oid})
        self.assertEqual(update["$set"]["transactionHash"], "hash-1")

    def test_get_investor_with_invalid_id(self) -> None:
        self.assertIsNone(self.store.get_investor("not-an-id"))
        self.investors.find_one.assert_not_called()

    def test_get_investor_missing(self) -> None:
        self.investors.find_one.return_value = None
        self.assertIsNone(self.store.get_investor(str(ObjectId())))

    def test_count_and_list(self) -> None:
        self.investors.count_documents.return_value = 2
        self.investors.find.return_value = [{"_id": ObjectId(), "walletAddress": "G1"}]
        self.assertEqual(self.store.count_investors(), 2)
        listed = self.store.list_investors()
        self.assertEqual(listed[0]["walletAddress"], "G1")


if __name__ == "__main__":
    unittest.main()
