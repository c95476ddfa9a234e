#!/usr/bin/env python3
"""
MCP server for the Trading Simulator API.

Exposes account, price, trading and competition operations as MCP tools.
Each tool call is validated against the tool's input schema, forwarded to
TradingSimulatorClient, and answered with exactly one CallToolResult.
"""

from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Awaitable, Callable, List

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, Prompt, Resource, TextContent, Tool

# Load .env from current directory or parent directories
SERVER_DIR = Path(__file__).resolve().parent
load_dotenv(SERVER_DIR / ".env")
load_dotenv(SERVER_DIR.parent / ".env")

from log_redaction import configure_logging  # noqa: E402
from trading_sim_client import (  # noqa: E402
    BLOCKCHAIN_TYPES,
    PRICE_INTERVALS,
    SPECIFIC_CHAINS,
    TradingSimConfig,
    TradingSimulatorClient,
    detect_chain,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "trading-simulator-mcp"


class ValidationError(ValueError):
    """Tool arguments do not satisfy the tool's input schema."""


class UnknownToolError(LookupError):
    """The requested tool is not in the catalog."""


class RequestAbortedError(Exception):
    """The caller abandoned the tool call before it finished."""


class ToolCallError(Exception):
    """Hands an error result's text to the MCP SDK, which reports it with isError set."""


# ---------------------------------------------------------------------------
# Tool catalog
# ---------------------------------------------------------------------------

_CHAIN_PROPERTY = {
    "type": "string",
    "enum": list(BLOCKCHAIN_TYPES),
    "description": "Blockchain type (evm or svm). Auto-detected from the address if omitted.",
}

_SPECIFIC_CHAIN_PROPERTY = {
    "type": "string",
    "enum": list(SPECIFIC_CHAINS),
    "description": "Specific network for the token (eth, polygon, base, ..., or svm)",
}


def _schema(properties: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties or {},
        "additionalProperties": False,
    }
    if required:
        schema["required"] = required
    return schema


_PRICE_QUERY_SCHEMA = _schema(
    {
        "token": {"type": "string", "description": "Token address"},
        "chain": _CHAIN_PROPERTY,
        "specificChain": _SPECIFIC_CHAIN_PROPERTY,
    },
    required=["token"],
)

TOOLS: list[Tool] = [
    # Account
    Tool(
        name="get_balances",
        description="Get token balances for your team across all supported chains.",
        inputSchema=_schema(),
    ),
    Tool(
        name="get_portfolio",
        description="Get portfolio information including positions and total value.",
        inputSchema=_schema(),
    ),
    Tool(
        name="get_trades",
        description="Get trade history for your team with optional filtering and pagination.",
        inputSchema=_schema(
            {
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Maximum number of trades to return",
                },
                "offset": {
                    "type": "integer",
                    "minimum": 0,
                    "description": "Offset for pagination (0-based)",
                },
                "token": {"type": "string", "description": "Only trades involving this token address"},
                "chain": {**_CHAIN_PROPERTY, "description": "Filter by blockchain type"},
            }
        ),
    ),
    # Price
    Tool(
        name="get_price",
        description="Get the current market price for a token.",
        inputSchema=_PRICE_QUERY_SCHEMA,
    ),
    Tool(
        name="get_token_info",
        description="Get detailed token information (name, symbol, decimals, chain).",
        inputSchema=_PRICE_QUERY_SCHEMA,
    ),
    Tool(
        name="get_price_history",
        description="Get historical price data for a token over a time range and interval.",
        inputSchema=_schema(
            {
                "token": {"type": "string", "description": "Token address"},
                "startTime": {
                    "type": "string",
                    "description": "Start time as ISO timestamp (e.g. '2025-01-01T00:00:00Z')",
                },
                "endTime": {
                    "type": "string",
                    "description": "End time as ISO timestamp (e.g. '2025-01-31T23:59:59Z')",
                },
                "interval": {
                    "type": "string",
                    "enum": list(PRICE_INTERVALS),
                    "description": "Time between price points",
                },
                "chain": _CHAIN_PROPERTY,
                "specificChain": _SPECIFIC_CHAIN_PROPERTY,
            },
            required=["token"],
        ),
    ),
    # Trading
    Tool(
        name="execute_trade",
        description=(
            "Execute a trade from one token to another. Chains are detected "
            "from the token addresses unless given explicitly."
        ),
        inputSchema=_schema(
            {
                "fromToken": {"type": "string", "description": "Source token address"},
                "toToken": {"type": "string", "description": "Destination token address"},
                "amount": {
                    "type": "string",
                    "description": "Amount of fromToken to trade, as a decimal string",
                },
                "slippageTolerance": {
                    "type": "string",
                    "description": "Slippage tolerance percentage (e.g. '0.5' for 0.5%)",
                },
                "reason": {"type": "string", "description": "Why this trade is being made"},
                "fromChain": {**_CHAIN_PROPERTY, "description": "Blockchain type of fromToken"},
                "toChain": {**_CHAIN_PROPERTY, "description": "Blockchain type of toToken"},
                "fromSpecificChain": {
                    **_SPECIFIC_CHAIN_PROPERTY,
                    "description": "Specific network of fromToken",
                },
                "toSpecificChain": {
                    **_SPECIFIC_CHAIN_PROPERTY,
                    "description": "Specific network of toToken",
                },
            },
            required=["fromToken", "toToken", "amount"],
        ),
    ),
    Tool(
        name="get_quote",
        description="Get a quote for a potential trade without executing it.",
        inputSchema=_schema(
            {
                "fromToken": {"type": "string", "description": "Source token address"},
                "toToken": {"type": "string", "description": "Destination token address"},
                "amount": {
                    "type": "string",
                    "description": "Amount of fromToken to quote, as a decimal string",
                },
            },
            required=["fromToken", "toToken", "amount"],
        ),
    ),
    # Competition
    Tool(
        name="get_competition_status",
        description="Get information about the current trading competition.",
        inputSchema=_schema(),
    ),
    Tool(
        name="get_leaderboard",
        description="Get the current standings in the trading competition.",
        inputSchema=_schema(
            {
                "competitionId": {
                    "type": "string",
                    "description": "Competition ID (defaults to the active competition)",
                },
            }
        ),
    ),
    Tool(
        name="get_competition_rules",
        description="Get the rules of the current trading competition.",
        inputSchema=_schema(),
    ),
]

_TOOLS_BY_NAME: dict[str, Tool] = {tool.name: tool for tool in TOOLS}


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------


def _coerce(field_name: str, value: Any, prop: dict[str, Any]) -> Any:
    expected = prop.get("type")

    if expected == "string":
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValidationError(f"Invalid {field_name}. Must be a string.")
        if isinstance(value, str):
            value = value.strip()
        elif isinstance(value, float):
            # plain notation, so 1e-07 goes out as 0.0000001
            value = format(Decimal(str(value)), "f")
        else:
            value = str(value)
    elif expected == "integer":
        if isinstance(value, bool):
            raise ValidationError(f"Invalid {field_name}. Must be an integer.")
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        elif isinstance(value, str):
            try:
                value = int(value.strip())
            except ValueError as exc:
                raise ValidationError(f"Invalid {field_name}. Must be an integer.") from exc
        elif not isinstance(value, int):
            raise ValidationError(f"Invalid {field_name}. Must be an integer.")
        minimum = prop.get("minimum")
        if minimum is not None and value < minimum:
            raise ValidationError(f"Invalid {field_name}. Must be at least {minimum}.")

    allowed = prop.get("enum")
    if allowed is not None and value not in allowed:
        raise ValidationError(
            f"Invalid {field_name} {value!r}. Must be one of: {', '.join(map(str, allowed))}."
        )
    return value


def validate_arguments(tool: Tool, arguments: Any) -> dict[str, Any]:
    """
    Check an argument bag against tool.inputSchema and coerce its values.

    Keys that are absent, null, or blank optional strings stay absent in the result.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ValidationError("Invalid arguments. Expected an object.")

    schema = tool.inputSchema
    properties: dict[str, Any] = schema.get("properties", {})

    unexpected = sorted(k for k in arguments if k not in properties)
    if unexpected and schema.get("additionalProperties") is False:
        raise ValidationError(f"Unexpected argument(s) for {tool.name}: {', '.join(unexpected)}")

    required = schema.get("required", [])
    missing = [f for f in required if arguments.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required argument(s) for {tool.name}: {', '.join(missing)}")

    validated: dict[str, Any] = {}
    for field_name, prop in properties.items():
        value = arguments.get(field_name)
        if value is None:
            continue
        coerced = _coerce(field_name, value, prop)
        if coerced == "":
            if field_name in required:
                raise ValidationError(f"Invalid {field_name}. Must not be empty.")
            continue
        validated[field_name] = coerced

    if "amount" in validated:
        _parse_decimal(validated["amount"], "amount")
    if "slippageTolerance" in validated:
        _parse_decimal(validated["slippageTolerance"], "slippageTolerance", allow_zero=True)
    return validated


def _parse_decimal(value: str, field_name: str, allow_zero: bool = False) -> Decimal:
    try:
        parsed = Decimal(value)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid {field_name}. Must be a number.") from exc
    if not parsed.is_finite():
        raise ValidationError(f"Invalid {field_name}. Must be a number.")
    if parsed < 0 or (parsed == 0 and not allow_zero):
        qualifier = "zero or greater" if allow_zero else "greater than zero"
        raise ValidationError(f"Invalid {field_name}. Must be {qualifier}.")
    return parsed


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_get_balances(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(client.get_balances)


async def _handle_get_portfolio(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(client.get_portfolio)


async def _handle_get_trades(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(
        client.get_trades,
        limit=args.get("limit"),
        offset=args.get("offset"),
        token=args.get("token"),
        chain=args.get("chain"),
    )


async def _handle_get_price(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(
        client.get_price, args["token"], args.get("chain"), args.get("specificChain")
    )


async def _handle_get_token_info(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(
        client.get_token_info, args["token"], args.get("chain"), args.get("specificChain")
    )


async def _handle_get_price_history(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(
        client.get_price_history,
        args["token"],
        start_time=args.get("startTime"),
        end_time=args.get("endTime"),
        interval=args.get("interval"),
        chain=args.get("chain"),
        specific_chain=args.get("specificChain"),
    )


async def _handle_execute_trade(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    from_token = args["fromToken"]
    to_token = args["toToken"]
    return await asyncio.to_thread(
        client.execute_trade,
        from_token,
        to_token,
        args["amount"],
        slippage_tolerance=args.get("slippageTolerance"),
        reason=args.get("reason"),
        from_chain=args.get("fromChain") or detect_chain(from_token),
        to_chain=args.get("toChain") or detect_chain(to_token),
        from_specific_chain=args.get("fromSpecificChain"),
        to_specific_chain=args.get("toSpecificChain"),
    )


async def _handle_get_quote(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(
        client.get_quote, args["fromToken"], args["toToken"], args["amount"]
    )


async def _handle_get_competition_status(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(client.get_competition_status)


async def _handle_get_leaderboard(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(client.get_leaderboard, args.get("competitionId"))


async def _handle_get_competition_rules(client: TradingSimulatorClient, args: dict[str, Any]) -> Any:
    return await asyncio.to_thread(client.get_competition_rules)


_Handler = Callable[[TradingSimulatorClient, dict[str, Any]], Awaitable[Any]]

_HANDLERS: dict[str, _Handler] = {
    "get_balances": _handle_get_balances,
    "get_portfolio": _handle_get_portfolio,
    "get_trades": _handle_get_trades,
    "get_price": _handle_get_price,
    "get_token_info": _handle_get_token_info,
    "get_price_history": _handle_get_price_history,
    "execute_trade": _handle_execute_trade,
    "get_quote": _handle_get_quote,
    "get_competition_status": _handle_get_competition_status,
    "get_leaderboard": _handle_get_leaderboard,
    "get_competition_rules": _handle_get_competition_rules,
}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def _success_result(payload: Any) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(payload, indent=2))],
        isError=False,
    )


def _error_result(exc: BaseException) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=str(exc) or repr(exc))],
        isError=True,
    )


async def _wait_unless_aborted(awaitable: Awaitable[Any], cancel_event: asyncio.Event | None) -> Any:
    if cancel_event is None:
        return await awaitable

    call = asyncio.ensure_future(awaitable)
    aborted = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({call, aborted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        aborted.cancel()
    if call.done():
        return call.result()
    # The worker thread keeps running; only the wait is abandoned.
    call.cancel()
    raise RequestAbortedError("Request aborted")


async def dispatch_tool(
    client: TradingSimulatorClient,
    name: str,
    arguments: Any,
    cancel_event: asyncio.Event | None = None,
) -> CallToolResult:
    """Run one tool call and return its result. Never raises."""
    try:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestAbortedError("Request aborted")

        tool = _TOOLS_BY_NAME.get(name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {name}")

        args = validate_arguments(tool, arguments)
        payload = await _wait_unless_aborted(_HANDLERS[name](client, args), cancel_event)
        return _success_result(payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning("tool=%s outcome=error error=%s", name, exc)
        return _error_result(exc)


async def list_tools() -> List[Tool]:
    return list(TOOLS)


async def list_resources() -> List[Resource]:
    return []


async def list_prompts() -> List[Prompt]:
    return []


def create_server(client: TradingSimulatorClient) -> Server:
    """Build the MCP server with every handler bound to client."""
    app = Server(SERVER_NAME)

    @app.list_tools()
    async def _list_tools() -> List[Tool]:
        return await list_tools()

    @app.list_resources()
    async def _list_resources() -> List[Resource]:
        return await list_resources()

    @app.list_prompts()
    async def _list_prompts() -> List[Prompt]:
        return await list_prompts()

    # Arguments are validated by dispatch_tool, which also coerces them.
    @app.call_tool(validate_input=False)
    async def _call_tool(name: str, arguments: Any) -> List[TextContent]:
        result = await dispatch_tool(client, name, arguments)
        if result.isError:
            raise ToolCallError(result.content[0].text)
        return list(result.content)

    return app


async def main(client: TradingSimulatorClient | None = None) -> None:
    if client is None:
        client = TradingSimulatorClient(config=TradingSimConfig.from_env())
    app = create_server(client)
    logger.info("Trading Simulator MCP server running on stdio (api_url=%s)", client.base_url)
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    """Console-script entrypoint."""
    config = TradingSimConfig.from_env()
    configure_logging(config.debug)
    asyncio.run(main(TradingSimulatorClient(config=config)))


if __name__ == "__main__":
    run()
