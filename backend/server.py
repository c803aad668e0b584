"""HTTP backend for the Minah investment contract and its investor records."""
from __future__ import annotations

import hmac
import json
import logging
import re
import threading
import time
import urllib.parse
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import formatdate
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Pattern, Tuple

from pymongo.errors import PyMongoError

from backend.config import Settings
from backend.release import ReleaseRejected, evaluate_release, state_name
from backend.stellar import (
    ContractError,
    ContractUnavailable,
    FinalityTimeout,
    SorobanContractClient,
    format_units,
    parse_units,
    validate_address,
)
from backend.store import EMAIL_PATTERN, ProfileConflict, ProfileStore

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOGGER = logging.getLogger("minah.backend")


class APIError(Exception):
    def __init__(self, status: int, message: str, error: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.error = error
        self.data = data


class RateLimiter:
    """IP-based rate limiter to mitigate abusive clients."""

    def __init__(self, limit: int = 120, window: int = 60) -> None:
        self.limit = limit
        self.window = window
        self._records: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = time.time()
        with self._lock:
            bucket = self._records.setdefault(key, deque())
            while bucket and now - bucket[0] > self.window:
                bucket.popleft()
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True


@dataclass
class Services:
    """Process-wide collaborators handed to every request handler."""

    settings: Settings
    store: ProfileStore
    contract: SorobanContractClient
    rate_limiter: RateLimiter
    clock: Callable[[], float] = time.time


@dataclass
class Request:
    args: Tuple[str, ...] = ()
    query: Dict[str, str] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)


Result = Tuple[int, Dict[str, Any]]


def _ok(message: str, data: Any = None, status: int = HTTPStatus.OK) -> Result:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return status, body


def _failure(status: int, message: str, error: Optional[str] = None, data: Any = None) -> Result:
    body: Dict[str, Any] = {"success": False, "message": message}
    if error:
        body["error"] = error
    if data is not None:
        body["data"] = data
    return status, body


@contextmanager
def upstream(action: str) -> Iterator[None]:
    """Translate contract failures into API errors for ``action``."""

    try:
        yield
    except FinalityTimeout as exc:
        LOGGER.error("Timed out waiting to %s: %s", action, exc)
        raise APIError(HTTPStatus.GATEWAY_TIMEOUT, f"Timed out waiting to {action} on blockchain", str(exc))
    except ContractUnavailable as exc:
        LOGGER.error("Cannot %s: %s", action, exc)
        raise APIError(HTTPStatus.SERVICE_UNAVAILABLE, f"Blockchain client unavailable to {action}", str(exc))
    except ContractError as exc:
        LOGGER.error("Stellar error while trying to %s: %s", action, exc)
        raise APIError(HTTPStatus.INTERNAL_SERVER_ERROR, f"Failed to {action} on blockchain", str(exc) or "Stellar call failed")


def _normalize_addresses(payload: Dict[str, Any], fields: List[Tuple[str, str]]) -> Dict[str, Any]:
    """Strip address fields, reject malformed ones and return the cleaned payload."""

    cleaned = dict(payload)
    for key, label in fields:
        value = cleaned.get(key)
        if isinstance(value, str):
            value = value.strip() or None
            cleaned[key] = value
        if value and not validate_address(value):
            raise APIError(HTTPStatus.BAD_REQUEST, f"Invalid {label} address format")
    return cleaned


def _parse_percent(raw: Any) -> Any:
    if raw is None or raw == "":
        raise APIError(HTTPStatus.BAD_REQUEST, "Missing required field", "percent is required")
    if isinstance(raw, bool):
        raise APIError(HTTPStatus.BAD_REQUEST, "Invalid percent value", "percent must be a valid number")
    if not isinstance(raw, (str, int, float)):
        raise APIError(HTTPStatus.BAD_REQUEST, "Invalid percent value", "percent must be a valid number")
    try:
        value = float(raw)
    except (ValueError, OverflowError):
        raise APIError(HTTPStatus.BAD_REQUEST, "Invalid percent value", "percent must be a valid number")
    text = raw.strip() if isinstance(raw, str) else str(raw)
    if value != value or value in (float("inf"), float("-inf")):
        raise APIError(HTTPStatus.BAD_REQUEST, "Invalid percent value", "percent must be a valid number")
    if value < 0:
        raise APIError(HTTPStatus.BAD_REQUEST, "Invalid percent value", "percent must be a positive number")
    return text


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


# investors


def handle_create_investor(services: Services, request: Request) -> Result:
    payload = request.payload
    email = payload.get("email")
    if email and not EMAIL_PATTERN.match(str(email).strip()):
        raise APIError(HTTPStatus.BAD_REQUEST, "Invalid email format")
    payload = _normalize_addresses(
        payload,
        [
            ("walletAddress", "Stellar wallet"),
            ("stellarAddress", "Stellar wallet"),
            ("InternalwalletAddress", "internal wallet"),
        ],
    )
    wallet = payload.get("walletAddress") or payload.get("stellarAddress")
    payload["walletAddress"] = wallet

    try:
        investor = services.store.create_investor(payload)
    except ProfileConflict as exc:
        raise APIError(HTTPStatus.CONFLICT, "Investor already exists", str(exc))

    transaction_hash: Optional[str] = None
    if wallet:
        try:
            with upstream("create investor"):
                transaction_hash = services.contract.create_investor(wallet)
        except Exception:
            services.store.discard_investor(investor["id"])
            raise
        try:
            services.store.attach_transaction(investor["id"], transaction_hash)
        except PyMongoError as exc:
            LOGGER.error(
                "Investor %s registered on-chain (%s) but the profile was not updated: %s",
                wallet,
                transaction_hash,
                exc,
            )
    return _ok(
        "Investor created successfully",
        {"investor": investor, "transactionHash": transaction_hash},
        HTTPStatus.CREATED,
    )


def handle_list_investors(services: Services, request: Request) -> Result:
    investors = services.store.list_investors()
    if request.query.get("withBalance", "").lower() in {"1", "true", "yes"}:
        for investor in investors:
            wallet = investor.get("walletAddress")
            if not wallet:
                continue
            try:
                investor["nftBalance"] = services.contract.balance(wallet)
            except ContractError as exc:
                LOGGER.warning("NFT balance lookup failed for %s: %s", wallet, exc)
                investor["nftBalance"] = None
    return _ok("Investors retrieved successfully", {"investors": investors, "count": len(investors)})


def handle_investor_count(services: Services, request: Request) -> Result:
    return _ok("Investor count retrieved successfully", {"count": services.store.count_investors()})


def handle_claimed_amount(services: Services, request: Request) -> Result:
    identifier = urllib.parse.unquote(request.args[0]).strip()
    investor = services.store.get_investor(identifier)
    if investor is not None:
        wallet = investor.get("walletAddress")
        if not wallet:
            raise APIError(HTTPStatus.BAD_REQUEST, "Investor has no wallet address")
    elif validate_address(identifier):
        wallet = identifier
        investor = services.store.find_investor_by_wallet(wallet)
    else:
        raise APIError(HTTPStatus.NOT_FOUND, "Investor not found", f"{identifier} is neither an investor id nor a Stellar address")
    with upstream("read claimed amount"):
        amount = services.contract.see_claimed_amount(wallet)
    return _ok(
        "Claimed amount retrieved successfully",
        {
            "investorId": investor["id"] if investor else None,
            "walletAddress": wallet,
            "claimedAmount": str(amount),
            "claimedAmountFormatted": format_units(amount, services.settings.usdc_decimals),
        },
    )


# vaults


def handle_create_vault(services: Services, request: Request) -> Result:
    payload = request.payload
    payload = _normalize_addresses(
        payload,
        [("walletAddress", "Stellar wallet"), ("InternalwalletAddress", "internal wallet"), ("vaultAddress", "vault")],
    )
    try:
        vault = services.store.create_vault(payload)
    except ProfileConflict as exc:
        raise APIError(HTTPStatus.CONFLICT, "Vault already exists", str(exc))
    return _ok("Vault created successfully", {"vault": vault}, HTTPStatus.CREATED)


# investment state and chronometer


def handle_investment_state(services: Services, request: Request) -> Result:
    with upstream("read investment state"):
        state = services.contract.get_current_state()
    return _ok("Investment state retrieved successfully", {"state": state, "stateName": state_name(state)})


def handle_nft_supply(services: Services, request: Request) -> Result:
    with upstream("read NFT supply"):
        supply = services.contract.get_current_supply()
    return _ok("Current NFT supply retrieved successfully", {"currentSupply": supply})


def handle_start_chronometer(services: Services, request: Request) -> Result:
    with upstream("start chronometer"):
        transaction_hash = services.contract.start_chronometer()
    return _ok("Chronometer started successfully", {"transactionHash": transaction_hash})


def handle_chronometer_details(services: Services, request: Request) -> Result:
    with upstream("read chronometer status"):
        is_started = services.contract.is_chronometer_started()
    begin_date: Optional[int] = None
    if is_started:
        try:
            begin_date = services.contract.get_begin_date()
        except ContractError as exc:
            LOGGER.error("Error getting begin date: %s", exc)
    return _ok(
        "Chronometer details retrieved successfully",
        {
            "isStarted": is_started,
            "beginDate": str(begin_date) if begin_date else None,
            "beginDateISO": _isoformat(begin_date) if begin_date else None,
            "beginDateUTC": formatdate(begin_date, usegmt=True) if begin_date else None,
        },
    )


# release


def handle_calculate_release(services: Services, request: Request) -> Result:
    raw = request.args[0] if request.args else request.payload.get("percent")
    if request.args:
        raw = urllib.parse.unquote(raw)
    percent = _parse_percent(raw)
    decimals = services.settings.usdc_decimals
    scaled = parse_units(percent, decimals)
    with upstream("calculate amount"):
        amount = services.contract.calculate_amount_to_release(scaled)
    return _ok("Amount calculated successfully", {"amount": format_units(amount, decimals)})


def check_release(services: Services) -> None:
    contract = services.contract
    with upstream("check release eligibility"):
        decision = evaluate_release(
            contract.is_chronometer_started,
            contract.get_current_state,
            contract.get_begin_date,
            contract.get_distribution_intervals,
            contract.get_investors_array_length,
            now=int(services.clock()),
        )
    if not decision.allowed:
        LOGGER.info("Release rejected: %s", decision.as_dict())
    decision.raise_for_rejection()


def handle_release_distribution(services: Services, request: Request) -> Result:
    check_release(services)
    with upstream("release distribution"):
        transaction_hash = services.contract.release_distribution()
    return _ok("Distribution released successfully", {"transactionHash": transaction_hash})


# contract info


def _contract_read(message: str, key: str, reader: Callable[[SorobanContractClient], Any], render: Callable[[Any], Any] = lambda value: value) -> Callable[[Services, Request], Result]:
    def handler(services: Services, request: Request) -> Result:
        with upstream("read contract info"):
            value = reader(services.contract)
        return _ok(message, {key: render(value)})

    return handler


def _stringify_list(values: List[int]) -> List[str]:
    return [str(value) for value in values]


handle_stablecoin = _contract_read("Stablecoin address retrieved", "address", lambda c: c.get_stablecoin())
handle_receiver = _contract_read("Receiver address retrieved", "address", lambda c: c.get_receiver())
handle_payer = _contract_read("Payer address retrieved", "address", lambda c: c.get_payer())
handle_nft_price = _contract_read("NFT price retrieved", "price", lambda c: c.get_nft_price(), str)
handle_total_supply = _contract_read("Total supply retrieved", "totalSupply", lambda c: c.get_total_supply())
handle_min_nfts = _contract_read("Min NFTs to mint retrieved", "min", lambda c: c.get_min_nfts_to_mint())
handle_max_nfts = _contract_read("Max NFTs per investor retrieved", "max", lambda c: c.get_max_nfts_per_investor())
handle_buying_phase_supply = _contract_read(
    "Buying phase NFT supply retrieved", "amount", lambda c: c.get_nft_buying_phase_supply()
)
handle_distribution_intervals = _contract_read(
    "Distribution intervals retrieved", "intervals", lambda c: c.get_distribution_intervals(), _stringify_list
)
handle_roi_percentages = _contract_read(
    "ROI percentages retrieved", "percentages", lambda c: c.get_roi_percentages(), _stringify_list
)
handle_investors_array_length = _contract_read(
    "Investors array length retrieved", "length", lambda c: c.get_investors_array_length()
)


def handle_is_investor(services: Services, request: Request) -> Result:
    address = urllib.parse.unquote(request.args[0]).strip()
    if not validate_address(address):
        raise APIError(HTTPStatus.BAD_REQUEST, "Invalid Stellar address")
    with upstream("read contract info"):
        result = services.contract.is_investor(address)
    return _ok("Investor check completed", {"isInvestor": result})


def handle_hello(services: Services, request: Request) -> Result:
    to = request.query.get("to", "").strip()
    if not to:
        raise APIError(HTTPStatus.BAD_REQUEST, "Missing 'to' query parameter")
    with upstream("call hello"):
        greeting = services.contract.hello(to)
    return _ok("Hello called successfully", greeting)


Route = Tuple[str, Pattern[str], Callable[[Services, Request], Result]]


def _route(method: str, pattern: str, handler: Callable[[Services, Request], Result]) -> Route:
    return method, re.compile(f"^{pattern}$"), handler


ROUTES: List[Route] = [
    _route("POST", "/api/investors", handle_create_investor),
    _route("POST", "/api/investors/create", handle_create_investor),
    _route("GET", "/api/investors", handle_list_investors),
    _route("GET", "/api/investors/count", handle_investor_count),
    _route("GET", "/api/investors/([^/]+)/claimed-amount", handle_claimed_amount),
    _route("POST", "/api/vaults", handle_create_vault),
    _route("GET", "/api/investment-state", handle_investment_state),
    _route("GET", "/api/investment-state/nft-supply", handle_nft_supply),
    _route("POST", "/api/chronometer", handle_start_chronometer),
    _route("POST", "/api/chronometer/start", handle_start_chronometer),
    _route("POST", "/api/start_chronometer", handle_start_chronometer),
    _route("GET", "/api/chronometer/details", handle_chronometer_details),
    _route("POST", "/api/release/calculate", handle_calculate_release),
    _route("GET", "/api/release/calculate/([^/]+)", handle_calculate_release),
    _route("POST", "/api/release/calculate/([^/]+)", handle_calculate_release),
    _route("POST", "/api/release/distribute", handle_release_distribution),
    _route("GET", "/api/contract-info/stablecoin", handle_stablecoin),
    _route("GET", "/api/contract-info/receiver", handle_receiver),
    _route("GET", "/api/contract-info/payer", handle_payer),
    _route("GET", "/api/contract-info/nft-price", handle_nft_price),
    _route("GET", "/api/contract-info/total-supply", handle_total_supply),
    _route("GET", "/api/contract-info/min-nfts-to-mint", handle_min_nfts),
    _route("GET", "/api/contract-info/max-nfts-per-investor", handle_max_nfts),
    _route("GET", "/api/contract-info/nft-buying-phase-supply", handle_buying_phase_supply),
    _route("GET", "/api/contract-info/distribution-intervals", handle_distribution_intervals),
    _route("GET", "/api/contract-info/roi-percentages", handle_roi_percentages),
    _route("GET", "/api/contract-info/investors-array-length", handle_investors_array_length),
    _route("GET", "/api/contract-info/is-investor/([^/]+)", handle_is_investor),
    _route("GET", "/api/hello", handle_hello),
]


def resolve(method: str, path: str) -> Tuple[Optional[Callable[[Services, Request], Result]], Tuple[str, ...], bool]:
    """Find the handler for ``method`` and ``path``.

    The third element tells whether the path exists under another method,
    so the caller can answer 405 instead of 404.
    """

    path_known = False
    for route_method, pattern, handler in ROUTES:
        match = pattern.match(path)
        if not match:
            continue
        if route_method == method:
            return handler, match.groups(), True
        path_known = True
    return None, (), path_known


def dispatch(services: Services, method: str, path: str, query: Dict[str, str], payload: Any) -> Result:
    handler, args, path_known = resolve(method, path)
    if handler is None:
        if path_known:
            return _failure(HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
        return _failure(HTTPStatus.NOT_FOUND, "Not found")
    if not isinstance(payload, dict):
        return _failure(HTTPStatus.BAD_REQUEST, "Invalid request body", "JSON object expected")
    try:
        return handler(services, Request(args=args, query=query, payload=payload))
    except APIError as exc:
        return _failure(exc.status, exc.message, exc.error, exc.data)
    except ReleaseRejected as exc:
        return _failure(HTTPStatus.BAD_REQUEST, exc.message, exc.reason, {"reason": exc.reason})
    except (KeyError, ValueError) as exc:
        return _failure(HTTPStatus.BAD_REQUEST, "Invalid request", str(exc))
    except PyMongoError as exc:
        LOGGER.error("Database error on %s %s: %s", method, path, exc)
        return _failure(HTTPStatus.INTERNAL_SERVER_ERROR, "Database error", str(exc))
    except Exception as exc:
        LOGGER.exception("Unhandled error on %s %s", method, path)
        return _failure(HTTPStatus.INTERNAL_SERVER_ERROR, "Internal server error", str(exc) or "An unexpected error occurred")


class Handler(BaseHTTPRequestHandler):
    server_version = "MinahBackend/1.0"
    server: "BackendServer"

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - logging override
        LOGGER.info("%s - %s", self.address_string(), format % args)

    def _json(self, status: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _text(self, status: int, text: str) -> None:
        body = text.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> Any:
        length = int(self.headers.get("Content-Length", "0") or 0)
        raw = self.rfile.read(length) if length else b""
        if not raw.strip():
            return {}
        return json.loads(raw)

    def _ensure_authorized(self) -> bool:
        api_key = self.server.services.settings.api_key
        if not api_key:
            return True
        provided = self.headers.get("X-API-Key", "")
        if not provided or not hmac.compare_digest(api_key, provided):
            self._json(HTTPStatus.UNAUTHORIZED, {"success": False, "message": "Unauthorized"})
            return False
        return True

    def _rate_limit(self) -> bool:
        limiter = self.server.services.rate_limiter
        if not limiter.allow(self.client_address[0]):
            self._json(
                HTTPStatus.TOO_MANY_REQUESTS,
                {"success": False, "message": "Too many requests", "error": f"retry in {limiter.window}s"},
            )
            return False
        return True

    def do_OPTIONS(self) -> None:  # noqa: N802 - preflight support
        self.send_response(HTTPStatus.NO_CONTENT)
        self.send_header("Access-Control-Allow-Headers", "Content-Type,X-API-Key")
        self.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
        self.end_headers()

    def end_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")
        super().end_headers()

    def _handle(self, method: str) -> None:
        parsed = urllib.parse.urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        if method == "GET" and path == "/":
            self._text(HTTPStatus.OK, "Stellar Minah Backend is running.")
            return
        if method == "GET" and path == "/health":
            self._json(HTTPStatus.OK, {"status": "ok", "timestamp": _isoformat(time.time())})
            return
        if not self._rate_limit() or not self._ensure_authorized():
            return
        query = {key: values[-1] for key, values in urllib.parse.parse_qs(parsed.query).items()}
        payload: Any = {}
        if method == "POST":
            try:
                payload = self._read_json()
            except (ValueError, UnicodeDecodeError):
                self._json(HTTPStatus.BAD_REQUEST, {"success": False, "message": "Invalid JSON body"})
                return
        status, body = dispatch(self.server.services, method, path, query, payload)
        self._json(status, body)

    def do_GET(self) -> None:  # noqa: N802
        self._handle("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._handle("POST")


class BackendServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: Tuple[str, int], services: Services) -> None:
        super().__init__(address, Handler)
        self.services = services


def build_services(settings: Settings) -> Services:
    store = ProfileStore.connect(settings.mongodb_uri, settings.mongodb_database)
    contract = SorobanContractClient(settings)
    if not contract.available():
        LOGGER.warning("Stellar contract client not fully configured; contract endpoints will fail")
    limiter = RateLimiter(limit=settings.rate_limit, window=settings.rate_limit_window)
    return Services(settings=settings, store=store, contract=contract, rate_limiter=limiter)


def run(settings: Optional[Settings] = None) -> None:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    services = build_services(settings)
    server = BackendServer((settings.host, settings.port), services)
    LOGGER.info("Minah backend listening on http://%s:%s", settings.host, settings.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        LOGGER.info("Shutting down due to interrupt")
    finally:
        server.server_close()
        services.store.close()


if __name__ == "__main__":
    run()
