#!/usr/bin/env python3
"""
MCP server for EVM wallet operations.

Exposes balance queries, ETH transfers, ERC-20 transfer/approve/allowance and
generic read-only contract calls against a single JSON-RPC endpoint.

Usage: evm_wallet_mcp_server.py [RPC_URL]
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

# Load .env from current directory or parent directories
SERVER_DIR = Path(__file__).resolve().parent
load_dotenv(SERVER_DIR / ".env")
load_dotenv(SERVER_DIR.parent / ".env")

from evm_schemas import TOOLS, validate  # noqa: E402
from evm_wallet import (  # noqa: E402
    ChainClientProvider,
    EVMConfig,
    EVMWalletError,
    MissingCredentialError,
    SigningClient,
    UnknownToolError,
    amount_to_raw,
    call_contract,
    erc20_allowance,
    erc20_balance_of,
    erc20_decimals,
    erc20_write,
    format_eth_balance,
    format_token_amount,
    get_eth_balance,
    send_eth,
)

log = logging.getLogger("evm_wallet_mcp_server")

app = Server("blockchain-server", version="1.0.0")


@dataclass
class Runtime:
    """Everything a handler needs, built once in main()."""

    config: EVMConfig
    clients: ChainClientProvider

    @classmethod
    def from_config(cls, config: EVMConfig) -> Runtime:
        return cls(config=config, clients=ChainClientProvider(config))

    def signer(self) -> SigningClient:
        if not self.config.private_key:
            raise MissingCredentialError(
                "No signing key configured. Set PRIVATE_KEY in your environment or .env file."
            )
        return self.clients.get_signing_client(self.config.private_key)


_runtime: Runtime | None = None


def configure(runtime: Runtime) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Server runtime not configured. Call configure() first.")
    return _runtime


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text_response(text: str) -> List[TextContent]:
    return [TextContent(type="text", text=text)]


def _error_result(message: str) -> CallToolResult:
    return CallToolResult(content=_text_response(f"Error: {message}"), isError=True)


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


@app.list_tools()
async def list_tools() -> List[Tool]:
    return TOOLS


# ---------------------------------------------------------------------------
# Handlers -- reads
# ---------------------------------------------------------------------------


async def _handle_get_eth_balance(rt: Runtime, arguments: dict[str, Any]) -> List[TextContent]:
    args = validate("get_eth_balance", arguments)
    w3 = rt.clients.get_read_client()
    balance = await asyncio.to_thread(get_eth_balance, w3, args.address)
    return _text_response(format_eth_balance(balance, args.unit))


async def _handle_get_erc20_balance(rt: Runtime, arguments: dict[str, Any]) -> List[TextContent]:
    args = validate("get_erc20_balance", arguments)
    w3 = rt.clients.get_read_client()
    balance, decimals = await asyncio.gather(
        asyncio.to_thread(erc20_balance_of, w3, args.tokenAddress, args.accountAddress),
        asyncio.to_thread(erc20_decimals, w3, args.tokenAddress),
    )
    return _text_response(format_token_amount(balance, decimals))


async def _handle_erc20_allowance(rt: Runtime, arguments: dict[str, Any]) -> List[TextContent]:
    args = validate("erc20_allowance", arguments)
    w3 = rt.clients.get_read_client()
    allowance, decimals = await asyncio.gather(
        asyncio.to_thread(erc20_allowance, w3, args.tokenAddress, args.owner, args.spender),
        asyncio.to_thread(erc20_decimals, w3, args.tokenAddress),
    )
    return _text_response(format_token_amount(allowance, decimals))


async def _handle_call_contract(rt: Runtime, arguments: dict[str, Any]) -> List[TextContent]:
    args = validate("call_contract", arguments)
    w3 = rt.clients.get_read_client()
    result = await asyncio.to_thread(
        call_contract, w3, args.address, args.abi, args.functionName, args.args
    )
    return _text_response(json.dumps(result, indent=2))


async def _handle_get_rpc_url(rt: Runtime, arguments: dict[str, Any]) -> List[TextContent]:
    validate("get_rpc_url", arguments)
    return _text_response(rt.config.rpc_url)


# ---------------------------------------------------------------------------
# Handlers -- writes
# ---------------------------------------------------------------------------


async def _handle_send_eth(rt: Runtime, arguments: dict[str, Any]) -> List[TextContent]:
    args = validate("send_eth", arguments)
    signer = rt.signer()
    value = amount_to_raw(args.amountEth, rt.config.chain.native_currency.decimals)
    tx_hash = await asyncio.to_thread(send_eth, signer, args.to, value)
    return _text_response(f"Transaction broadcast. Hash: {tx_hash}")


async def _handle_erc20_transfer(rt: Runtime, arguments: dict[str, Any]) -> List[TextContent]:
    args = validate("erc20_transfer", arguments)
    signer = rt.signer()
    decimals = await asyncio.to_thread(erc20_decimals, rt.clients.get_read_client(), args.tokenAddress)
    amount_raw = amount_to_raw(args.amount, decimals)
    tx_hash = await asyncio.to_thread(
        erc20_write, signer, args.tokenAddress, "transfer", args.to, amount_raw
    )
    return _text_response(f"Transfer submitted. Tx hash: {tx_hash}")


async def _handle_erc20_approve(rt: Runtime, arguments: dict[str, Any]) -> List[TextContent]:
    args = validate("erc20_approve", arguments)
    signer = rt.signer()
    decimals = await asyncio.to_thread(erc20_decimals, rt.clients.get_read_client(), args.tokenAddress)
    amount_raw = amount_to_raw(args.amount, decimals)
    tx_hash = await asyncio.to_thread(
        erc20_write, signer, args.tokenAddress, "approve", args.spender, amount_raw
    )
    return _text_response(f"Approve transaction broadcast. Tx hash: {tx_hash}")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

Handler = Callable[[Runtime, dict[str, Any]], Awaitable[List[TextContent]]]

HANDLERS: dict[str, Handler] = {
    "get_eth_balance": _handle_get_eth_balance,
    "get_erc20_balance": _handle_get_erc20_balance,
    "send_eth": _handle_send_eth,
    "call_contract": _handle_call_contract,
    "erc20_transfer": _handle_erc20_transfer,
    "erc20_approve": _handle_erc20_approve,
    "erc20_allowance": _handle_erc20_allowance,
    "get_rpc_url": _handle_get_rpc_url,
}


async def dispatch(rt: Runtime, name: str, arguments: Any) -> List[TextContent]:
    handler = HANDLERS.get(name)
    if handler is None:
        raise UnknownToolError(name)
    log.debug("Dispatching %s", name)
    return await handler(rt, arguments)


# ---------------------------------------------------------------------------
# Protocol front-end
# ---------------------------------------------------------------------------


async def execute_tool(rt: Runtime, name: str, arguments: Any) -> CallToolResult:
    """Run one tool call and wrap the outcome in the response envelope."""
    try:
        content = await dispatch(rt, name, arguments)
    except EVMWalletError as exc:
        log.warning("Tool %s failed: %s", name, exc)
        return _error_result(str(exc))
    except Exception as exc:  # noqa: BLE001
        log.exception("Tool %s raised unexpectedly", name)
        return _error_result(str(exc) or type(exc).__name__)
    return CallToolResult(content=content, isError=False)


@app.call_tool(validate_input=False)
async def call_tool(name: str, arguments: Any) -> CallToolResult:
    return await execute_tool(get_runtime(), name, arguments)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def serve(rt: Runtime) -> None:
    configure(rt)
    async with stdio_server() as (read_stream, write_stream):
        log.info("EVM wallet MCP server listening on stdio - RPC: %s", rt.config.rpc_url)
        await app.run(read_stream, write_stream, app.create_initialization_options())


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="[%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        config = EVMConfig.from_env(sys.argv[1:])
        asyncio.run(serve(Runtime.from_config(config)))
    except KeyboardInterrupt:
        pass
    except Exception:  # noqa: BLE001
        log.exception("Fatal error starting EVM wallet MCP server")
        sys.exit(1)


if __name__ == "__main__":
    main()
