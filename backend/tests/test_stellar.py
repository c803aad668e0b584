import dataclasses
import os
import unittest
from unittest import mock

from stellar_sdk import Account, Keypair, StrKey, scval
from stellar_sdk.soroban_rpc import GetTransactionStatus, SendTransactionStatus

from backend.config import Settings
from backend.stellar import (
    I128_MAX,
    ContractError,
    ContractUnavailable,
    FinalityTimeout,
    SorobanContractClient,
    format_units,
    parse_units,
    validate_address,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _status(status, meta="AAAA", result="BBBB"):
    return mock.Mock(status=status, result_meta_xdr=meta, result_xdr=result)


class UnitConversionTests(unittest.TestCase):
    def test_parse_units_scales_decimals(self) -> None:
        self.assertEqual(parse_units("4", 7), 40_000_000)
        self.assertEqual(parse_units(2.67, 7), 26_700_000)
        self.assertEqual(parse_units("0.00000001", 7), 0)

    def test_parse_units_rejects_garbage(self) -> None:
        with self.assertRaises(ValueError):
            parse_units("abc", 7)
        with self.assertRaises(ValueError):
            parse_units("NaN", 7)

    def test_format_units(self) -> None:
        self.assertEqual(format_units(180_000_000, 7), "18")
        self.assertEqual(format_units(26_700_000, 7), "2.67")
        self.assertEqual(format_units(1, 7), "0.0000001")
        self.assertEqual(format_units(0, 7), "0")


class AddressValidationTests(unittest.TestCase):
    def test_accepts_account_and_contract_addresses(self) -> None:
        self.assertTrue(validate_address(Keypair.random().public_key))
        self.assertTrue(validate_address(StrKey.encode_contract(os.urandom(32))))

    def test_rejects_malformed_values(self) -> None:
        for value in ("", "   ", "not-an-address", "GABC", None, 42, Keypair.random().secret):
            self.assertFalse(validate_address(value), value)


class ContractClientTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.owner = Keypair.random()
        self.minter = Keypair.random()
        self.contract_id = StrKey.encode_contract(os.urandom(32))
        self.usdc_id = StrKey.encode_contract(os.urandom(32))
        self.settings = Settings(
            contract_id=self.contract_id,
            owner_secret_key=self.owner.secret,
            mint_secret_key=self.minter.secret,
            usdc_contract_id=self.usdc_id,
            finality_timeout=10.0,
            finality_poll_initial=1.0,
            finality_poll_max=4.0,
        )
        self.server = mock.Mock()
        self.server.load_account.side_effect = lambda public_key: Account(public_key, 100)
        self.server.prepare_transaction.side_effect = lambda tx: tx
        self.clock = FakeClock()
        self.client = SorobanContractClient(self.settings, server=self.server, sleep=self.clock.sleep, clock=self.clock)

    def _simulated(self, value):
        return mock.Mock(error=None, results=[mock.Mock(xdr=value.to_xdr())])


class FinalityWaitTests(ContractClientTestCase):
    def test_returns_on_success_after_backoff(self) -> None:
        self.server.get_transaction.side_effect = [
            _status(GetTransactionStatus.NOT_FOUND),
            _status(GetTransactionStatus.NOT_FOUND),
            _status(GetTransactionStatus.NOT_FOUND),
            _status(GetTransactionStatus.SUCCESS),
        ]
        response = self.client.wait_for_transaction("abc")
        self.assertEqual(response.status, GetTransactionStatus.SUCCESS)
        self.assertEqual(self.clock.sleeps, [1.0, 2.0, 4.0])

    def test_backoff_is_capped(self) -> None:
        self.settings = dataclasses.replace(self.settings, finality_timeout=100.0)
        self.client = SorobanContractClient(self.settings, server=self.server, sleep=self.clock.sleep, clock=self.clock)
        self.server.get_transaction.side_effect = [_status(GetTransactionStatus.NOT_FOUND)] * 5 + [
            _status(GetTransactionStatus.SUCCESS)
        ]
        self.client.wait_for_transaction("abc")
        self.assertEqual(self.clock.sleeps, [1.0, 2.0, 4.0, 4.0, 4.0])

    def test_times_out_with_distinguishable_error(self) -> None:
        self.server.get_transaction.return_value = _status(GetTransactionStatus.NOT_FOUND)
        with self.assertRaises(FinalityTimeout) as ctx:
            self.client.wait_for_transaction("abc")
        self.assertEqual(ctx.exception.tx_hash, "abc")
        self.assertGreaterEqual(ctx.exception.waited, 10.0)
        self.assertLessEqual(sum(self.clock.sleeps), 10.0)
        self.assertIsInstance(ctx.exception, ContractError)

    def test_failed_transaction_raises(self) -> None:
        self.server.get_transaction.return_value = _status(GetTransactionStatus.FAILED, result="FAILXDR")
        with self.assertRaises(ContractError) as ctx:
            self.client.wait_for_transaction("abc")
        self.assertIn("FAILXDR", str(ctx.exception))
        self.assertNotIsInstance(ctx.exception, FinalityTimeout)

    def test_success_without_meta_raises(self) -> None:
        self.server.get_transaction.return_value = _status(GetTransactionStatus.SUCCESS, meta=None)
        with self.assertRaises(ContractError):
            self.client.wait_for_transaction("abc")


class ReadTests(ContractClientTestCase):
    def test_reads_decode_contract_values(self) -> None:
        self.server.simulate_transaction.return_value = self._simulated(scval.to_uint32(3))
        self.assertEqual(self.client.get_current_state(), 3)
        self.server.simulate_transaction.return_value = self._simulated(scval.to_bool(True))
        self.assertTrue(self.client.is_chronometer_started())
        self.server.simulate_transaction.return_value = self._simulated(scval.to_uint64(1_700_000_000))
        self.assertEqual(self.client.get_begin_date(), 1_700_000_000)
        self.server.simulate_transaction.return_value = self._simulated(scval.to_int128(123_456))
        self.assertEqual(self.client.see_claimed_amount(Keypair.random().public_key), 123_456)
        self.server.send_transaction.assert_not_called()

    def test_vector_reads(self) -> None:
        self.server.simulate_transaction.return_value = self._simulated(
            scval.to_vec([scval.to_uint64(60), scval.to_uint64(120)])
        )
        self.assertEqual(self.client.get_distribution_intervals(), [60, 120])

    def test_hello_joins_words(self) -> None:
        self.server.simulate_transaction.return_value = self._simulated(
            scval.to_vec([scval.to_string("Hello"), scval.to_string("world")])
        )
        self.assertEqual(self.client.hello("world"), "Hello world")

    def test_address_reads(self) -> None:
        payer = Keypair.random().public_key
        self.server.simulate_transaction.return_value = self._simulated(scval.to_address(payer))
        self.assertEqual(self.client.get_payer(), payer)

    def test_simulation_error_raises(self) -> None:
        self.server.simulate_transaction.return_value = mock.Mock(error="HostError: State not set", results=None)
        with self.assertRaises(ContractError) as ctx:
            self.client.get_current_state()
        self.assertIn("State not set", str(ctx.exception))

    def test_unconfigured_client_is_unavailable(self) -> None:
        client = SorobanContractClient(Settings(), server=self.server)
        self.assertFalse(client.available())
        with self.assertRaises(ContractUnavailable):
            client.get_current_state()


class WriteTests(ContractClientTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.server.send_transaction.side_effect = self._sent
        self.server.get_transaction.return_value = _status(GetTransactionStatus.SUCCESS)
        self.server.get_latest_ledger.return_value = mock.Mock(sequence=500)
        self.sent = []

    def _sent(self, tx):
        self.sent.append(tx)
        return mock.Mock(status=SendTransactionStatus.PENDING, hash=f"hash-{len(self.sent)}", error_result_xdr=None)

    def _invoked(self, index):
        op = self.sent[index].transaction.operations[0]
        return op.host_function.invoke_contract.function_name.sc_symbol.decode("utf-8")

    def test_start_chronometer_signs_and_waits(self) -> None:
        tx_hash = self.client.start_chronometer()
        self.assertEqual(tx_hash, "hash-1")
        self.assertEqual(self._invoked(0), "start_chronometer")
        self.assertEqual(len(self.sent[0].signatures), 1)
        self.server.prepare_transaction.assert_called_once()
        self.server.get_transaction.assert_called_with("hash-1")

    def test_rejected_submission_raises(self) -> None:
        self.server.send_transaction.side_effect = None
        self.server.send_transaction.return_value = mock.Mock(
            status=SendTransactionStatus.ERROR, hash="h", error_result_xdr="ERRXDR"
        )
        with self.assertRaises(ContractError) as ctx:
            self.client.create_investor(Keypair.random().public_key)
        self.assertIn("ERRXDR", str(ctx.exception))
        self.server.get_transaction.assert_not_called()

    def test_release_distribution_approves_before_releasing(self) -> None:
        tx_hash = self.client.release_distribution()
        self.assertEqual(tx_hash, "hash-2")
        self.assertEqual(self._invoked(0), "approve")
        self.assertEqual(self._invoked(1), "release_distribution")
        approve_args = self.sent[0].transaction.operations[0].host_function.invoke_contract.args
        self.assertEqual(scval.from_int128(approve_args[2]), I128_MAX)
        self.assertEqual(scval.from_uint32(approve_args[3]), 500 + 1_000_000)

    def test_mint_checks_balance_first(self) -> None:
        self.server.simulate_transaction.side_effect = [
            self._simulated(scval.to_int128(2)),
            self._simulated(scval.to_int128(10)),
        ]
        with self.assertRaises(ContractError) as ctx:
            self.client.mint_nft(self.minter.public_key, 5)
        self.assertIn("Insufficient balance", str(ctx.exception))
        self.assertEqual(self.sent, [])

    def test_mint_approves_total_cost_then_mints(self) -> None:
        self.server.simulate_transaction.side_effect = [
            self._simulated(scval.to_int128(2)),
            self._simulated(scval.to_int128(10**9)),
        ]
        tx_hash = self.client.mint_nft(self.minter.public_key, 5)
        self.assertEqual(tx_hash, "hash-2")
        self.assertEqual(self._invoked(0), "approve")
        self.assertEqual(self._invoked(1), "mint")
        approve_args = self.sent[0].transaction.operations[0].host_function.invoke_contract.args
        self.assertEqual(scval.from_int128(approve_args[2]), 10 * 10**7)
        self.assertEqual(self.sent[1].transaction.source.account_id, self.minter.public_key)


if __name__ == "__main__":
    unittest.main()
