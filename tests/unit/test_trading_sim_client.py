"""Unit tests for the Trading Simulator API client."""

import json
import logging
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import trading_sim_client  # noqa: E402
from trading_sim_client import (  # noqa: E402
    ApiError,
    ChainInfo,
    MissingCredentialWarning,
    NetworkError,
    ResponseParseError,
    TradingSimConfig,
    TradingSimConfigError,
    TradingSimulatorClient,
    detect_chain,
    find_known_token,
)


EVM_TOKEN = "0x1234567890123456789012345678901234567890"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
BASE_USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
SOL = "So11111111111111111111111111111111111111112"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status_code=200, text='{"success": true}'):
        self.status_code = status_code
        self.text = text


class FakeTransport:
    """Stands in for requests.request and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses) or [FakeResponse()]
        self.calls = []

    def __call__(self, method, url, headers=None, data=None, timeout=None):
        self.calls.append(
            {"method": method, "url": url, "headers": headers, "data": data, "timeout": timeout}
        )
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    @property
    def last(self):
        return self.calls[-1]

    def body(self, index=-1):
        return json.loads(self.calls[index]["data"])

    def query(self, index=-1):
        return {k: v[0] for k, v in parse_qs(urlsplit(self.calls[index]["url"]).query).items()}

    def path(self, index=-1):
        return urlsplit(self.calls[index]["url"]).path


@pytest.fixture
def client():
    return TradingSimulatorClient(
        config=TradingSimConfig(api_key="test-key", api_url="http://example.com", timeout=5.0)
    )


@pytest.fixture
def transport(monkeypatch):
    fake = FakeTransport()
    monkeypatch.setattr(trading_sim_client.requests, "request", fake)
    return fake


def _install(monkeypatch, *responses):
    fake = FakeTransport(*responses)
    monkeypatch.setattr(trading_sim_client.requests, "request", fake)
    return fake


# ---------------------------------------------------------------------------
# Chain detection
# ---------------------------------------------------------------------------


def test_detect_chain_evm_address():
    assert detect_chain(WETH) == "evm"
    assert detect_chain(EVM_TOKEN) == "evm"


def test_detect_chain_defaults_to_svm():
    assert detect_chain(SOL) == "svm"
    assert detect_chain("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v") == "svm"


@pytest.mark.parametrize(
    "token",
    [
        "0x123",  # too short
        "0x" + "a" * 41,  # too long
        "0x" + "g" * 40,  # not hex
        "1x" + "a" * 40,
        "",
    ],
)
def test_detect_chain_non_evm_falls_back_to_svm(token):
    assert detect_chain(token) == "svm"


def test_client_detect_chain_delegates(client):
    assert client.detect_chain(WETH) == "evm"
    assert client.detect_chain(SOL) == "svm"


def test_find_known_token_evm_is_case_insensitive():
    assert find_known_token(WETH.lower()) == ChainInfo(chain="evm", specific_chain="eth")
    assert find_known_token(BASE_USDC) == ChainInfo(chain="evm", specific_chain="base")


def test_find_known_token_svm_and_unknown():
    assert find_known_token(SOL) == ChainInfo(chain="svm", specific_chain="svm")
    assert find_known_token(SOL.lower()) is None
    assert find_known_token(EVM_TOKEN) is None


# ---------------------------------------------------------------------------
# Configuration & construction
# ---------------------------------------------------------------------------


def test_config_from_env_defaults(monkeypatch):
    for var in ("TRADING_SIM_API_KEY", "TRADING_SIM_API_URL", "DEBUG", "TRADING_SIM_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)

    cfg = TradingSimConfig.from_env()
    assert cfg.api_key == ""
    assert cfg.api_url == "http://localhost:3000"
    assert cfg.debug is False
    assert cfg.timeout == 30.0


def test_config_from_env_reads_values(monkeypatch):
    monkeypatch.setenv("TRADING_SIM_API_KEY", "  abc123  ")
    monkeypatch.setenv("TRADING_SIM_API_URL", "https://sim.example.com/")
    monkeypatch.setenv("DEBUG", "TRUE")
    monkeypatch.setenv("TRADING_SIM_TIMEOUT", "12.5")

    cfg = TradingSimConfig.from_env()
    assert cfg.api_key == "abc123"
    assert cfg.api_url == "https://sim.example.com/"
    assert cfg.debug is True
    assert cfg.timeout == 12.5


@pytest.mark.parametrize("raw", ["soon", "0", "-3"])
def test_config_rejects_bad_timeout(monkeypatch, raw):
    monkeypatch.setenv("TRADING_SIM_TIMEOUT", raw)
    with pytest.raises(TradingSimConfigError):
        TradingSimConfig.from_env()


def test_base_url_trailing_slash_is_stripped():
    cfg = TradingSimConfig(api_key="k")
    with_slash = TradingSimulatorClient(api_url="http://x/", config=cfg)
    without_slash = TradingSimulatorClient(api_url="http://x", config=cfg)
    assert with_slash.base_url == "http://x"
    assert without_slash.base_url == "http://x"


def test_missing_api_key_warns_but_constructs():
    with pytest.warns(MissingCredentialWarning):
        client = TradingSimulatorClient(config=TradingSimConfig(api_key="   "))
    assert client.api_key == ""


def test_missing_api_key_is_reported_once(caplog):
    caplog.set_level(logging.DEBUG, logger="trading_sim_client")
    with pytest.warns(MissingCredentialWarning) as record:
        TradingSimulatorClient(config=TradingSimConfig(api_key=""))
    assert len(record) == 1
    assert caplog.records == []


def test_missing_api_key_fails_at_request_time(monkeypatch):
    with pytest.warns(MissingCredentialWarning):
        client = TradingSimulatorClient(config=TradingSimConfig(api_key=""))
    _install(monkeypatch, FakeResponse(401, '{"success": false, "error": "Unauthorized"}'))

    with pytest.raises(ApiError) as excinfo:
        client.get_balances()
    assert excinfo.value.status_code == 401
    assert str(excinfo.value) == "Unauthorized"


def test_explicit_arguments_override_config():
    cfg = TradingSimConfig(api_key="from-config", api_url="http://config", debug=False, timeout=9.0)
    client = TradingSimulatorClient(api_key=" explicit ", debug=True, config=cfg)
    assert client.api_key == "explicit"
    assert client.base_url == "http://config"
    assert client.debug is True
    assert client.timeout == 9.0


def test_repr_does_not_leak_api_key(client):
    assert "test-key" not in repr(client)


# ---------------------------------------------------------------------------
# request()
# ---------------------------------------------------------------------------


def test_request_sends_bearer_headers(client, transport):
    client.get_balances()

    call = transport.last
    assert call["method"] == "GET"
    assert call["url"] == "http://example.com/api/account/balances"
    assert call["headers"] == {
        "Authorization": "Bearer test-key",
        "Content-Type": "application/json",
        "User-Agent": "TradingSimMCP/1.0",
    }
    assert call["data"] is None
    assert call["timeout"] == 5.0


def test_request_serializes_body(client, transport):
    client.request("post", "/api/anything", {"a": 1})
    assert transport.last["method"] == "POST"
    assert transport.body() == {"a": 1}


def test_request_returns_decoded_json(client, monkeypatch):
    payload = {"success": True, "balances": [{"token": SOL, "amount": 10, "chain": "svm"}]}
    _install(monkeypatch, FakeResponse(200, json.dumps(payload)))
    assert client.get_balances() == payload


def test_request_error_nested_message(client, monkeypatch):
    _install(monkeypatch, FakeResponse(500, '{"error": {"message": "boom"}}'))
    with pytest.raises(ApiError) as excinfo:
        client.get_portfolio()
    assert str(excinfo.value) == "boom"
    assert excinfo.value.status_code == 500


def test_request_error_string_field(client, monkeypatch):
    _install(monkeypatch, FakeResponse(400, '{"success": false, "error": "Invalid token", "status": 400}'))
    with pytest.raises(ApiError, match="^Invalid token$"):
        client.get_price("nope")


def test_request_error_top_level_message(client, monkeypatch):
    _install(monkeypatch, FakeResponse(403, '{"message": "Forbidden"}'))
    with pytest.raises(ApiError, match="^Forbidden$"):
        client.get_portfolio()


def test_request_error_nested_message_wins_over_top_level(client, monkeypatch):
    _install(monkeypatch, FakeResponse(422, '{"message": "outer", "error": {"message": "inner"}}'))
    with pytest.raises(ApiError, match="^inner$"):
        client.get_portfolio()


def test_request_error_raw_text_when_not_json(client, monkeypatch):
    _install(monkeypatch, FakeResponse(502, "Bad Gateway"))
    with pytest.raises(ApiError, match="^Bad Gateway$"):
        client.get_portfolio()


def test_request_error_empty_body_uses_status(client, monkeypatch):
    _install(monkeypatch, FakeResponse(404, ""))
    with pytest.raises(ApiError, match="status 404"):
        client.get_portfolio()


def test_request_success_with_unparseable_body(client, monkeypatch):
    _install(monkeypatch, FakeResponse(200, "not json"))
    with pytest.raises(ResponseParseError):
        client.get_balances()


def test_request_network_error_hides_transport_details(client, monkeypatch):
    def boom(*_args, **_kwargs):
        raise requests.ConnectionError("connect to 10.0.0.1:3000 failed, retry=5")

    monkeypatch.setattr(trading_sim_client.requests, "request", boom)
    with pytest.raises(NetworkError) as excinfo:
        client.get_balances()
    assert "10.0.0.1" not in str(excinfo.value)
    assert str(excinfo.value) == "Network error occurred while making API request."


def test_request_timeout_is_network_error(client, monkeypatch):
    def stall(*_args, **_kwargs):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(trading_sim_client.requests, "request", stall)
    with pytest.raises(NetworkError):
        client.get_competition_status()


# ---------------------------------------------------------------------------
# Endpoint paths and query strings
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "method_name, path",
    [
        ("get_balances", "/api/account/balances"),
        ("get_portfolio", "/api/account/portfolio"),
        ("get_profile", "/api/account/profile"),
        ("get_competition_status", "/api/competition/status"),
        ("get_competition_rules", "/api/competition/rules"),
        ("get_health", "/api/health"),
        ("get_detailed_health", "/api/health/detailed"),
    ],
)
def test_bodyless_get_endpoints(client, transport, method_name, path):
    getattr(client, method_name)()
    assert transport.last["method"] == "GET"
    assert transport.last["url"] == f"http://example.com{path}"


def test_get_trades_omits_absent_filters(client, transport):
    client.get_trades()
    assert transport.last["url"] == "http://example.com/api/account/trades"


def test_get_trades_sends_supplied_filters(client, transport):
    client.get_trades(limit=10, offset=0, chain="svm")
    assert transport.path() == "/api/account/trades"
    assert transport.query() == {"limit": "10", "offset": "0", "chain": "svm"}


def test_get_price_query(client, transport):
    client.get_price(WETH, "evm", "eth")
    assert transport.path() == "/api/price"
    assert transport.query() == {"token": WETH, "chain": "evm", "specificChain": "eth"}


def test_get_token_info_only_token(client, transport):
    client.get_token_info(SOL)
    assert transport.path() == "/api/price/token-info"
    assert transport.query() == {"token": SOL}


def test_get_price_history_query(client, transport):
    client.get_price_history(
        WETH,
        start_time="2025-01-01T00:00:00Z",
        interval="1h",
    )
    assert transport.path() == "/api/price/history"
    assert transport.query() == {
        "token": WETH,
        "startTime": "2025-01-01T00:00:00Z",
        "interval": "1h",
    }


def test_get_quote_query(client, transport):
    client.get_quote(WETH, SOL, "1.5")
    assert transport.path() == "/api/trade/quote"
    assert transport.query() == {"fromToken": WETH, "toToken": SOL, "amount": "1.5"}


def test_get_leaderboard_with_and_without_competition(client, transport):
    client.get_leaderboard()
    assert transport.last["url"] == "http://example.com/api/competition/leaderboard"

    client.get_leaderboard("comp-42")
    assert transport.query() == {"competitionId": "comp-42"}


def test_blank_query_values_are_omitted(client, transport):
    client.get_trades(token="", chain="  ")
    assert transport.last["url"] == "http://example.com/api/account/trades"

    client.get_price_history(SOL, start_time="", end_time="  ")
    assert transport.query() == {"token": SOL}

    client.get_leaderboard("")
    assert transport.last["url"] == "http://example.com/api/competition/leaderboard"


def test_update_profile_puts_json(client, transport):
    client.update_profile(contactPerson="Alex", metadata=None)
    assert transport.last["method"] == "PUT"
    assert transport.path() == "/api/account/profile"
    assert transport.body() == {"contactPerson": "Alex"}


# ---------------------------------------------------------------------------
# Trade execution
# ---------------------------------------------------------------------------


def test_execute_trade_detects_chains_for_unknown_tokens(client, transport):
    client.execute_trade(EVM_TOKEN, "SomeSolanaMint1111111111111111111111111111", "1.5")

    assert transport.last["method"] == "POST"
    assert transport.path() == "/api/trade/execute"
    body = transport.body()
    assert body == {
        "fromToken": EVM_TOKEN,
        "toToken": "SomeSolanaMint1111111111111111111111111111",
        "amount": "1.5",
        "fromChain": "evm",
        "toChain": "svm",
    }


def test_execute_trade_uses_known_token_table(client, transport):
    client.execute_trade(WETH, BASE_USDC, "2", slippage_tolerance="0.5")

    body = transport.body()
    assert body["fromChain"] == "evm"
    assert body["fromSpecificChain"] == "eth"
    assert body["toChain"] == "evm"
    assert body["toSpecificChain"] == "base"
    assert body["slippageTolerance"] == "0.5"
    assert "reason" not in body


def test_execute_trade_explicit_values_win(client, transport):
    client.execute_trade(
        WETH,
        SOL,
        "1",
        reason="rebalance",
        from_chain="evm",
        from_specific_chain="polygon",
        to_chain="svm",
    )

    body = transport.body()
    assert body["fromSpecificChain"] == "polygon"
    assert body["toChain"] == "svm"
    assert body["toSpecificChain"] == "svm"
    assert body["reason"] == "rebalance"


def test_execute_trade_table_ignored_when_explicit_chain_disagrees(client, transport):
    client.execute_trade(SOL, EVM_TOKEN, "1", from_chain="evm")

    body = transport.body()
    assert body["fromChain"] == "evm"
    assert "fromSpecificChain" not in body


def test_execute_trade_cross_chain_fallback(client, monkeypatch):
    fake = _install(
        monkeypatch,
        FakeResponse(400, '{"error": "Cross-chain trading is disabled: cross-chain not allowed"}'),
        FakeResponse(200, '{"success": true, "transaction": {"id": "t1"}}'),
    )

    result = client.execute_trade(WETH, SOL, "1", from_chain="evm", to_chain="svm")

    assert result["transaction"]["id"] == "t1"
    assert len(fake.calls) == 2
    first, second = fake.body(0), fake.body(1)
    assert first["fromSpecificChain"] == "eth"
    assert second == {
        "fromToken": WETH,
        "toToken": SOL,
        "amount": "1",
        "fromChain": "evm",
        "toChain": "svm",
    }


def test_execute_trade_omits_blank_optional_fields(client, monkeypatch):
    fake = _install(
        monkeypatch,
        FakeResponse(400, '{"error": "cross-chain trades are disabled"}'),
        FakeResponse(200, '{"success": true}'),
    )

    client.execute_trade(WETH, SOL, "1", slippage_tolerance="", reason="   ")

    for index in (0, 1):
        body = fake.body(index)
        assert "slippageTolerance" not in body
        assert "reason" not in body


def test_execute_trade_no_fallback_without_table_hints(client, monkeypatch):
    fake = _install(monkeypatch, FakeResponse(400, '{"error": "cross-chain not allowed"}'))

    with pytest.raises(ApiError):
        client.execute_trade(EVM_TOKEN, "SomeSolanaMint1111111111111111111111111111", "1")
    assert len(fake.calls) == 1


def test_execute_trade_other_errors_propagate(client, monkeypatch):
    fake = _install(monkeypatch, FakeResponse(400, '{"error": "Insufficient balance"}'))

    with pytest.raises(ApiError, match="Insufficient balance"):
        client.execute_trade(WETH, BASE_USDC, "1000")
    assert len(fake.calls) == 1
