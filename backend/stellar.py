"""Soroban RPC client for the deployed Minah contract."""
from __future__ import annotations

import logging
import time
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Callable, List, Optional, Sequence

from stellar_sdk import Address, Asset, Keypair, Network, SorobanServer, TransactionBuilder, scval
from stellar_sdk import xdr as stellar_xdr
from stellar_sdk.exceptions import PrepareTransactionException, SdkError
from stellar_sdk.soroban_rpc import GetTransactionStatus, SendTransactionStatus

from backend.config import Settings

LOGGER = logging.getLogger("minah.backend.stellar")

I128_MAX = 2**127 - 1
APPROVAL_LEDGER_WINDOW = 1_000_000


class ContractError(Exception):
    """Upstream failure while reading from or writing to the contract."""


class FinalityTimeout(ContractError):
    def __init__(self, tx_hash: str, waited: float) -> None:
        super().__init__(f"timed out after {waited:.1f}s waiting for transaction {tx_hash}")
        self.tx_hash = tx_hash
        self.waited = waited


class ContractUnavailable(ContractError):
    pass


def parse_units(value: Any, decimals: int) -> int:
    """Scale a decimal amount to integer base units (truncating extra digits)."""

    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid amount {value!r}")
    return int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def format_units(amount: int, decimals: int) -> str:
    """Render integer base units as a plain decimal string without trailing zeros."""

    value = Decimal(int(amount)).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def validate_address(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        Address(value.strip())
    except (ValueError, SdkError):
        return False
    return True


def _network_passphrase(network: str) -> str:
    if network == "mainnet":
        return Network.PUBLIC_NETWORK_PASSPHRASE
    return Network.TESTNET_NETWORK_PASSPHRASE


class SorobanContractClient:
    """Reads and writes against one deployed contract through Soroban RPC.

    Reads are simulated with the owner account as source and never
    submitted. Writes are built, prepared (simulated to attach the footprint
    and resource fee), signed, sent and then polled until they leave the
    ``NOT_FOUND`` status or the finality deadline passes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        server: Optional[SorobanServer] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.contract_id = settings.contract_id
        self.server = server if server is not None else SorobanServer(settings.rpc_url)
        self.network_passphrase = _network_passphrase(settings.network)
        self._sleep = sleep
        self._clock = clock
        self.owner_keypair: Optional[Keypair] = None
        if settings.owner_secret_key:
            try:
                self.owner_keypair = Keypair.from_secret(settings.owner_secret_key)
            except (ValueError, SdkError) as exc:
                LOGGER.error("Invalid owner secret key: %s", exc)

    def available(self) -> bool:
        return bool(self.contract_id and self.owner_keypair)

    def _require_owner(self) -> Keypair:
        if not self.contract_id:
            raise ContractUnavailable("MINAH_CONTRACT_ID not configured")
        if self.owner_keypair is None:
            raise ContractUnavailable("STELLAR_OWNER_SECRET_KEY not configured")
        return self.owner_keypair

    def _builder(self, source_public_key: str) -> TransactionBuilder:
        account = self.server.load_account(source_public_key)
        return TransactionBuilder(
            account,
            network_passphrase=self.network_passphrase,
            base_fee=self.settings.base_fee,
        ).set_timeout(self.settings.tx_timeout)

    # reads

    def simulate(self, function_name: str, *parameters: stellar_xdr.SCVal, contract_id: Optional[str] = None) -> stellar_xdr.SCVal:
        owner = self._require_owner()
        target = contract_id or self.contract_id
        try:
            tx = (
                self._builder(owner.public_key)
                .append_invoke_contract_function_op(
                    contract_id=target,
                    function_name=function_name,
                    parameters=list(parameters),
                )
                .build()
            )
            response = self.server.simulate_transaction(tx)
        except SdkError as exc:
            LOGGER.error("Simulation of %s failed: %s", function_name, exc)
            raise ContractError(f"{function_name} query failed: {exc}") from exc
        if response.error:
            LOGGER.error("Simulation of %s returned error: %s", function_name, response.error)
            raise ContractError(f"{function_name} query failed: {response.error}")
        if not response.results:
            raise ContractError(f"{function_name} query returned no result")
        return stellar_xdr.SCVal.from_xdr(response.results[0].xdr)

    def hello(self, to: str) -> str:
        result = self.simulate("hello", scval.to_string(to))
        words = [scval.from_string(item).decode("utf-8") for item in scval.from_vec(result)]
        return " ".join(words)

    def get_current_state(self) -> int:
        return scval.from_uint32(self.simulate("get_current_state"))

    def is_chronometer_started(self) -> bool:
        return scval.from_bool(self.simulate("is_chronometer_started"))

    def get_begin_date(self) -> int:
        return scval.from_uint64(self.simulate("get_begin_date"))

    def get_current_supply(self) -> int:
        return scval.from_uint32(self.simulate("get_current_supply"))

    def see_claimed_amount(self, investor: str) -> int:
        return scval.from_int128(self.simulate("see_claimed_amount", scval.to_address(investor)))

    def get_nft_price(self) -> int:
        return scval.from_int128(self.simulate("get_nft_price"))

    def get_total_supply(self) -> int:
        return scval.from_uint32(self.simulate("get_total_supply"))

    def get_min_nfts_to_mint(self) -> int:
        return scval.from_uint32(self.simulate("get_min_nfts_to_mint"))

    def get_max_nfts_per_investor(self) -> int:
        return scval.from_uint32(self.simulate("get_max_nfts_per_investor"))

    def get_nft_buying_phase_supply(self) -> int:
        return scval.from_uint32(self.simulate("get_nft_buying_phase_supply"))

    def get_distribution_intervals(self) -> List[int]:
        return [scval.from_uint64(item) for item in scval.from_vec(self.simulate("get_distribution_intervals"))]

    def get_roi_percentages(self) -> List[int]:
        return [scval.from_int128(item) for item in scval.from_vec(self.simulate("get_roi_percentages"))]

    def get_investors_array_length(self) -> int:
        return scval.from_uint32(self.simulate("get_investors_array_length"))

    def is_investor(self, address: str) -> bool:
        return scval.from_bool(self.simulate("is_investor", scval.to_address(address)))

    def _address_result(self, function_name: str) -> str:
        return scval.from_address(self.simulate(function_name)).address

    def get_stablecoin(self) -> str:
        return self._address_result("get_stablecoin")

    def get_receiver(self) -> str:
        return self._address_result("get_receiver")

    def get_payer(self) -> str:
        return self._address_result("get_payer")

    def balance(self, address: str) -> int:
        return scval.from_uint32(self.simulate("balance", scval.to_address(address)))

    def calculate_amount_to_release(self, percent: int) -> int:
        return scval.from_int128(self.simulate("calculate_amount_to_release", scval.to_int128(percent)))

    def stablecoin_balance(self, address: str) -> int:
        if not self.settings.usdc_contract_id:
            raise ContractUnavailable("USDC_CONTRACT_ID not configured")
        result = self.simulate("balance", scval.to_address(address), contract_id=self.settings.usdc_contract_id)
        return scval.from_int128(result)

    # writes

    def wait_for_transaction(self, tx_hash: str, label: str = "transaction") -> Any:
        """Poll ``get_transaction`` with exponential backoff until final.

        Raises ``FinalityTimeout`` once ``finality_timeout`` seconds have
        passed with the transaction still unknown to the RPC node.
        """

        started = self._clock()
        deadline = started + self.settings.finality_timeout
        delay = self.settings.finality_poll_initial
        attempts = 0
        while True:
            try:
                response = self.server.get_transaction(tx_hash)
            except SdkError as exc:
                raise ContractError(f"{label} status lookup failed: {exc}") from exc
            attempts += 1
            if response.status != GetTransactionStatus.NOT_FOUND:
                break
            now = self._clock()
            remaining = deadline - now
            if remaining <= 0:
                LOGGER.error("%s %s not final after %s polls", label, tx_hash, attempts)
                raise FinalityTimeout(tx_hash, now - started)
            LOGGER.info("Waiting for %s confirmation (%s)...", label, tx_hash)
            self._sleep(min(delay, remaining))
            delay = min(delay * 2, self.settings.finality_poll_max)

        if response.status == GetTransactionStatus.SUCCESS:
            if not response.result_meta_xdr:
                raise ContractError(f"{label} {tx_hash}: empty result meta")
            LOGGER.info("%s %s confirmed", label, tx_hash)
            return response
        raise ContractError(f"{label} failed: {response.result_xdr}")

    def _submit(self, tx: Any, keypair: Keypair, label: str, *, prepare: bool = True) -> str:
        try:
            if prepare:
                tx = self.server.prepare_transaction(tx)
            tx.sign(keypair)
            response = self.server.send_transaction(tx)
        except PrepareTransactionException as exc:
            detail = getattr(exc.simulate_transaction_response, "error", None) or str(exc)
            LOGGER.error("%s simulation failed: %s", label, detail)
            raise ContractError(f"{label} simulation failed: {detail}") from exc
        except SdkError as exc:
            LOGGER.error("%s submission failed: %s", label, exc)
            raise ContractError(f"{label} submission failed: {exc}") from exc
        LOGGER.info("Sent %s: %s (%s)", label, response.hash, response.status)
        if response.status not in (SendTransactionStatus.PENDING, SendTransactionStatus.DUPLICATE):
            detail = response.error_result_xdr or f"status {response.status}"
            raise ContractError(f"{label} rejected: {detail}")
        self.wait_for_transaction(response.hash, label)
        return response.hash

    def invoke(
        self,
        function_name: str,
        parameters: Sequence[stellar_xdr.SCVal] = (),
        *,
        keypair: Optional[Keypair] = None,
        contract_id: Optional[str] = None,
    ) -> str:
        signer = keypair or self._require_owner()
        if not self.contract_id:
            raise ContractUnavailable("MINAH_CONTRACT_ID not configured")
        try:
            tx = (
                self._builder(signer.public_key)
                .append_invoke_contract_function_op(
                    contract_id=contract_id or self.contract_id,
                    function_name=function_name,
                    parameters=list(parameters),
                )
                .build()
            )
        except SdkError as exc:
            raise ContractError(f"{function_name} build failed: {exc}") from exc
        return self._submit(tx, signer, function_name)

    def create_investor(self, address: str) -> str:
        return self.invoke("create_investor", [scval.to_address(address)])

    def start_chronometer(self) -> str:
        return self.invoke("start_chronometer")

    def approve_stablecoin(self, keypair: Keypair, amount: int) -> str:
        if not self.settings.usdc_contract_id:
            raise ContractUnavailable("USDC_CONTRACT_ID not configured")
        try:
            latest = self.server.get_latest_ledger()
        except SdkError as exc:
            raise ContractError(f"latest ledger lookup failed: {exc}") from exc
        live_until = latest.sequence + APPROVAL_LEDGER_WINDOW
        LOGGER.info("Approving contract to spend %s stablecoin units until ledger %s", amount, live_until)
        return self.invoke(
            "approve",
            [
                scval.to_address(keypair.public_key),
                scval.to_address(self.contract_id),
                scval.to_int128(amount),
                scval.to_uint32(live_until),
            ],
            keypair=keypair,
            contract_id=self.settings.usdc_contract_id,
        )

    def release_distribution(self) -> str:
        owner = self._require_owner()
        approval = self.approve_stablecoin(owner, I128_MAX)
        LOGGER.info("Approval successful: %s", approval)
        tx_hash = self.invoke("release_distribution")
        LOGGER.info("Release distribution successful: %s", tx_hash)
        return tx_hash

    def mint_nft(self, user_address: str, amount: int) -> str:
        if not self.settings.mint_secret_key:
            raise ContractUnavailable("STELLAR_MINT_SECRET_KEY not configured")
        minter = Keypair.from_secret(self.settings.mint_secret_key)
        price = self.get_nft_price()
        total_cost = price * amount
        required = parse_units(total_cost, self.settings.usdc_decimals)
        LOGGER.info("Minting %s NFT(s) to %s at %s each (total %s base units)", amount, user_address, price, required)
        available = self.stablecoin_balance(minter.public_key)
        if available < required:
            raise ContractError(f"Insufficient balance. Required: {required}, Available: {available}")
        self.approve_stablecoin(minter, required)
        tx_hash = self.invoke(
            "mint",
            [scval.to_address(user_address), scval.to_uint32(amount)],
            keypair=minter,
        )
        LOGGER.info("Mint successful: %s", tx_hash)
        return tx_hash

    def change_trustline(self, secret_key: str) -> str:
        if not self.settings.usdc_asset_issuer:
            raise ContractUnavailable("USDC_ASSET_ISSUER not configured")
        keypair = Keypair.from_secret(secret_key)
        asset = Asset(self.settings.usdc_asset_code, self.settings.usdc_asset_issuer)
        try:
            tx = self._builder(keypair.public_key).append_change_trust_op(asset=asset).build()
        except SdkError as exc:
            raise ContractError(f"change_trust build failed: {exc}") from exc
        return self._submit(tx, keypair, "change_trust", prepare=False)


__all__ = [
    "ContractError",
    "ContractUnavailable",
    "FinalityTimeout",
    "I128_MAX",
    "SorobanContractClient",
    "format_units",
    "parse_units",
    "validate_address",
]
