"""
Trading Simulator REST API client.

Implements:
- Environment-driven configuration (TRADING_SIM_API_KEY, TRADING_SIM_API_URL, ...)
- Bearer-token authenticated requests with normalized error handling
- Chain detection for EVM / SVM token addresses
- One method per remote endpoint (account, price, trade, competition, health)
"""

from __future__ import annotations

import json
import logging
import os
import re
import warnings
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import urlencode

import requests

from log_redaction import redact_sensitive

logger = logging.getLogger(__name__)

BlockchainType = Literal["evm", "svm"]
SpecificChain = Literal[
    "eth",
    "polygon",
    "bsc",
    "arbitrum",
    "base",
    "optimism",
    "avalanche",
    "linea",
    "svm",
]

BLOCKCHAIN_TYPES: tuple[str, ...] = ("evm", "svm")
SPECIFIC_CHAINS: tuple[str, ...] = (
    "eth",
    "polygon",
    "bsc",
    "arbitrum",
    "base",
    "optimism",
    "avalanche",
    "linea",
    "svm",
)
PRICE_INTERVALS: tuple[str, ...] = ("1m", "5m", "15m", "1h", "4h", "1d")

DEFAULT_API_URL = "http://localhost:3000"
DEFAULT_TIMEOUT_SECONDS = 30.0
USER_AGENT = "TradingSimMCP/1.0"

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Well-known token addresses, keyed by chain family then specific chain.
KNOWN_TOKENS: dict[str, dict[str, dict[str, str]]] = {
    "svm": {
        "svm": {
            "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
            "SOL": "So11111111111111111111111111111111111111112",
        },
    },
    "evm": {
        "eth": {
            "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
            "WETH": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        },
        "base": {
            "USDC": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            "ETH": "0x4200000000000000000000000000000000000006",
        },
    },
}


class TradingSimConfigError(Exception):
    """Invalid Trading Simulator configuration value."""

    pass


class MissingCredentialWarning(UserWarning):
    """No API key is configured; authenticated calls will be rejected remotely."""


class TradingSimError(Exception):
    """Base class for failures talking to the Trading Simulator API."""


class NetworkError(TradingSimError):
    """The request failed before any HTTP response was received."""


class ApiError(TradingSimError):
    """The API answered with a non-success HTTP status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ResponseParseError(TradingSimError):
    """The API answered with a success status but the body is not JSON."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TradingSimConfig:
    """
    Configuration for the Trading Simulator client.

    Values are sourced from environment variables or a .env file.

    - TRADING_SIM_API_KEY: bearer credential for your team. Optional at
      startup; requests fail authentication without it.
    - TRADING_SIM_API_URL: API base URL (defaults to http://localhost:3000).
    - DEBUG: "true"/"1"/"yes"/"on" enables request-level debug logging.
    - TRADING_SIM_TIMEOUT: per-request timeout in seconds (defaults to 30).
    """

    api_key: str
    api_url: str = DEFAULT_API_URL
    debug: bool = False
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> TradingSimConfig:
        api_key = os.getenv("TRADING_SIM_API_KEY", "").strip()
        api_url = os.getenv("TRADING_SIM_API_URL", "").strip() or DEFAULT_API_URL

        debug_env = os.getenv("DEBUG", "false").strip().lower()
        debug = debug_env in ("true", "1", "yes", "on")

        timeout_raw = os.getenv("TRADING_SIM_TIMEOUT")
        timeout = DEFAULT_TIMEOUT_SECONDS
        if timeout_raw is not None and timeout_raw.strip():
            try:
                timeout = float(timeout_raw)
            except ValueError as exc:
                raise TradingSimConfigError(
                    f"Invalid TRADING_SIM_TIMEOUT={timeout_raw!r}. Must be a number of seconds."
                ) from exc
            if timeout <= 0:
                raise TradingSimConfigError(
                    f"Invalid TRADING_SIM_TIMEOUT={timeout_raw!r}. Must be greater than zero."
                )

        return cls(api_key=api_key, api_url=api_url, debug=debug, timeout=timeout)


# ---------------------------------------------------------------------------
# Chain helpers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainInfo:
    """Chain family and, when known, the specific network of a token."""

    chain: BlockchainType
    specific_chain: SpecificChain | None = None


def detect_chain(token: str) -> BlockchainType:
    """
    Classify a token address as EVM or SVM.

    Only the EVM form (0x + 40 hex chars) is positively recognised; every
    other string falls back to SVM. This does not validate Solana addresses.
    """
    if _EVM_ADDRESS_RE.match(token):
        return "evm"
    return "svm"


def find_known_token(token: str) -> ChainInfo | None:
    """Look up a token address in KNOWN_TOKENS."""
    for specific_chain, tokens in KNOWN_TOKENS["svm"].items():
        if token in tokens.values():
            return ChainInfo(chain="svm", specific_chain=specific_chain)

    lowered = token.lower()
    for specific_chain, tokens in KNOWN_TOKENS["evm"].items():
        for address in tokens.values():
            if address.lower() == lowered:
                return ChainInfo(chain="evm", specific_chain=specific_chain)
    return None


def _supplied(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and not value.strip())


def _query(path: str, params: dict[str, Any]) -> str:
    """Append only the supplied params to path as a query string; None and "" count as absent."""
    supplied = {k: v for k, v in params.items() if _supplied(v)}
    if not supplied:
        return path
    return f"{path}?{urlencode(supplied)}"


def _extract_error_message(text: str, status_code: int) -> str:
    fallback = f"API request failed with status {status_code}"
    if not text.strip():
        return fallback
    try:
        data = json.loads(text)
    except ValueError:
        return text

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("message"):
            return str(data["message"])
    return fallback


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TradingSimulatorClient:
    """
    Authenticated client for the Trading Simulator API.

    The instance only holds read-only configuration, so one client can be
    shared by every concurrent tool call.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        debug: bool | None = None,
        timeout: float | None = None,
        config: TradingSimConfig | None = None,
    ) -> None:
        if config is None and (api_key is None or api_url is None or debug is None or timeout is None):
            config = TradingSimConfig.from_env()

        self.api_key = (api_key if api_key is not None else config.api_key or "").strip()
        base_url = api_url if api_url is not None else config.api_url
        self.base_url = base_url[:-1] if base_url.endswith("/") else base_url
        self.debug = debug if debug is not None else config.debug
        self.timeout = timeout if timeout is not None else config.timeout

        if not self.api_key:
            warnings.warn(
                "TRADING_SIM_API_KEY is not set. The server will start, but "
                "every API request will be rejected.",
                MissingCredentialWarning,
                stacklevel=2,
            )

    def __repr__(self) -> str:
        return f"TradingSimulatorClient(base_url={self.base_url!r}, debug={self.debug})"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def request(self, method: str, path: str, body: Any = None) -> Any:
        """Send an authenticated request and return the decoded JSON body."""
        method = method.upper()
        url = f"{self.base_url}{path}"
        data = json.dumps(body) if body is not None else None

        if self.debug:
            logger.debug(
                "%s %s body=%s",
                method,
                url,
                redact_sensitive(body) if body is not None else "none",
            )

        try:
            resp = requests.request(
                method,
                url,
                headers=self._headers(),
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Network error during %s %s: %s", method, url, exc)
            raise NetworkError("Network error occurred while making API request.") from exc

        text = resp.text
        if self.debug:
            logger.debug("%s %s -> %s", method, url, resp.status_code)

        if not 200 <= resp.status_code < 300:
            raise ApiError(_extract_error_message(text, resp.status_code), resp.status_code)

        try:
            return json.loads(text)
        except ValueError as exc:
            raise ResponseParseError(f"Failed to parse successful response: {exc}") from exc

    def detect_chain(self, token: str) -> BlockchainType:
        return detect_chain(token)

    # -- Account -------------------------------------------------------------

    def get_balances(self) -> dict[str, Any]:
        """Token balances for your team across all supported chains."""
        return self.request("GET", "/api/account/balances")

    def get_portfolio(self) -> dict[str, Any]:
        return self.request("GET", "/api/account/portfolio")

    def get_trades(
        self,
        limit: int | None = None,
        offset: int | None = None,
        token: str | None = None,
        chain: BlockchainType | None = None,
    ) -> dict[str, Any]:
        """Trade history, optionally filtered and paginated."""
        path = _query(
            "/api/account/trades",
            {"limit": limit, "offset": offset, "token": token, "chain": chain},
        )
        return self.request("GET", path)

    def get_profile(self) -> dict[str, Any]:
        return self.request("GET", "/api/account/profile")

    def update_profile(self, **fields: Any) -> dict[str, Any]:
        """Update team profile fields (e.g. contactPerson, metadata)."""
        body = {k: v for k, v in fields.items() if v is not None}
        return self.request("PUT", "/api/account/profile", body)

    # -- Price ---------------------------------------------------------------

    def get_price(
        self,
        token: str,
        chain: BlockchainType | None = None,
        specific_chain: SpecificChain | None = None,
    ) -> dict[str, Any]:
        path = _query(
            "/api/price",
            {"token": token, "chain": chain, "specificChain": specific_chain},
        )
        return self.request("GET", path)

    def get_token_info(
        self,
        token: str,
        chain: BlockchainType | None = None,
        specific_chain: SpecificChain | None = None,
    ) -> dict[str, Any]:
        path = _query(
            "/api/price/token-info",
            {"token": token, "chain": chain, "specificChain": specific_chain},
        )
        return self.request("GET", path)

    def get_price_history(
        self,
        token: str,
        start_time: str | None = None,
        end_time: str | None = None,
        interval: str | None = None,
        chain: BlockchainType | None = None,
        specific_chain: SpecificChain | None = None,
    ) -> dict[str, Any]:
        path = _query(
            "/api/price/history",
            {
                "token": token,
                "startTime": start_time,
                "endTime": end_time,
                "interval": interval,
                "chain": chain,
                "specificChain": specific_chain,
            },
        )
        return self.request("GET", path)

    # -- Trading -------------------------------------------------------------

    def execute_trade(
        self,
        from_token: str,
        to_token: str,
        amount: str,
        slippage_tolerance: str | None = None,
        reason: str | None = None,
        from_chain: BlockchainType | None = None,
        to_chain: BlockchainType | None = None,
        from_specific_chain: SpecificChain | None = None,
        to_specific_chain: SpecificChain | None = None,
    ) -> dict[str, Any]:
        """
        Execute a trade between two tokens.

        Chain fields the caller leaves out are resolved per side: the
        explicit value wins, then the KNOWN_TOKENS table, then detect_chain.
        If the API rejects a table-derived pairing as cross-chain, the trade
        is retried once without the table-derived fields.
        """
        base: dict[str, Any] = {
            "fromToken": from_token,
            "toToken": to_token,
            "amount": amount,
        }
        if _supplied(slippage_tolerance):
            base["slippageTolerance"] = slippage_tolerance
        if _supplied(reason):
            base["reason"] = reason

        payload = dict(base)
        from_filled = _resolve_side(payload, "from", from_token, from_chain, from_specific_chain)
        to_filled = _resolve_side(payload, "to", to_token, to_chain, to_specific_chain)

        try:
            return self.request("POST", "/api/trade/execute", payload)
        except ApiError as exc:
            if "cross-chain" not in exc.message or not (from_filled or to_filled):
                raise
            logger.info("Retrying trade without known-token chain hints: %s", exc.message)

        fallback = dict(base)
        fallback["fromChain"] = from_chain or detect_chain(from_token)
        fallback["toChain"] = to_chain or detect_chain(to_token)
        if from_specific_chain is not None:
            fallback["fromSpecificChain"] = from_specific_chain
        if to_specific_chain is not None:
            fallback["toSpecificChain"] = to_specific_chain
        return self.request("POST", "/api/trade/execute", fallback)

    def get_quote(self, from_token: str, to_token: str, amount: str) -> dict[str, Any]:
        path = _query(
            "/api/trade/quote",
            {"fromToken": from_token, "toToken": to_token, "amount": amount},
        )
        return self.request("GET", path)

    # -- Competition ---------------------------------------------------------

    def get_competition_status(self) -> dict[str, Any]:
        return self.request("GET", "/api/competition/status")

    def get_leaderboard(self, competition_id: str | None = None) -> dict[str, Any]:
        path = _query("/api/competition/leaderboard", {"competitionId": competition_id})
        return self.request("GET", path)

    def get_competition_rules(self) -> dict[str, Any]:
        return self.request("GET", "/api/competition/rules")

    # -- Health --------------------------------------------------------------

    def get_health(self) -> dict[str, Any]:
        return self.request("GET", "/api/health")

    def get_detailed_health(self) -> dict[str, Any]:
        return self.request("GET", "/api/health/detailed")


def _resolve_side(
    payload: dict[str, Any],
    side: str,
    token: str,
    chain: BlockchainType | None,
    specific_chain: SpecificChain | None,
) -> bool:
    """
    Fill <side>Chain / <side>SpecificChain in payload.

    Returns True when any value came from the KNOWN_TOKENS table.
    """
    known = find_known_token(token)
    from_table = False

    if chain is not None:
        resolved_chain = chain
    elif known is not None:
        resolved_chain = known.chain
        from_table = True
    else:
        resolved_chain = detect_chain(token)
    payload[f"{side}Chain"] = resolved_chain

    if specific_chain is not None:
        payload[f"{side}SpecificChain"] = specific_chain
    elif known is not None and known.chain == resolved_chain and known.specific_chain:
        payload[f"{side}SpecificChain"] = known.specific_chain
        from_table = True

    return from_table
