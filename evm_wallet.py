"""
EVM chain access for the wallet MCP server.

Holds the process configuration, the chain identity, the read/signing client
provider and the synchronous chain operations wrapped by the MCP tools.
"""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any, Iterator, Literal, Mapping, Sequence

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import ValidationError as KeyValidationError
from web3 import Web3
from web3.exceptions import Web3Exception

log = logging.getLogger(__name__)

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_CHAIN_ID = 1337
DEFAULT_RPC_TIMEOUT = 10.0
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

EthUnit = Literal["wei", "ether", "gwei"]

UNIT_DECIMALS: dict[str, int] = {"wei": 0, "gwei": 9, "ether": 18}

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_INT_TYPE_RE = re.compile(r"^u?int(\d*)$")

ERC20_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "allowance",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "transfer",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "approve",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class EVMWalletError(Exception):
    """Base class for every failure reported back to MCP clients."""


class ConfigError(EVMWalletError):
    """Invalid process configuration; only raised at startup."""


class ValidationError(EVMWalletError):
    """Tool arguments violate the declared schema."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class UnknownToolError(EVMWalletError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class MissingCredentialError(EVMWalletError):
    """A write tool was called but PRIVATE_KEY is not configured."""


class InvalidKeyError(EVMWalletError):
    """The configured private key is not a valid secp256k1 key."""


class ChainRpcError(EVMWalletError):
    """The RPC round trip failed (network, revert, ABI encoding)."""


# ---------------------------------------------------------------------------
# Configuration & chain identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NativeCurrency:
    name: str = "Ether"
    symbol: str = "ETH"
    decimals: int = 18


@dataclass(frozen=True)
class ChainIdentity:
    """Fixed description of the network the server talks to."""

    chain_id: int
    name: str
    rpc_urls: tuple[str, ...]
    native_currency: NativeCurrency = field(default_factory=NativeCurrency)
    multicall3_address: str = MULTICALL3_ADDRESS
    multicall3_block_created: int = 0


@dataclass(frozen=True)
class EVMConfig:
    """
    Process-wide configuration, resolved once at startup.

    Sources:
    - RPC endpoint: first CLI argument, then RPC_URL, then DEFAULT_RPC_URL.
    - PRIVATE_KEY: hex key for write tools; optional for read-only use.
    - CHAIN_ID: optional chain id override (defaults to 1337).
    - RPC_TIMEOUT: per-request HTTP timeout in seconds (defaults to 10).
    """

    rpc_url: str
    chain: ChainIdentity
    private_key: str | None = field(default=None, repr=False)
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT

    @classmethod
    def from_env(
        cls,
        argv: Sequence[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> EVMConfig:
        env = os.environ if environ is None else environ
        args = list(argv or [])

        rpc_url = (args[0] if args else None) or env.get("RPC_URL") or DEFAULT_RPC_URL

        raw_chain_id = (env.get("CHAIN_ID") or "").strip()
        if raw_chain_id:
            try:
                chain_id = int(raw_chain_id, 0)
            except ValueError as exc:
                raise ConfigError(f"Invalid CHAIN_ID={raw_chain_id!r}. Expected an integer.") from exc
        else:
            chain_id = DEFAULT_CHAIN_ID

        raw_timeout = (env.get("RPC_TIMEOUT") or "").strip()
        rpc_timeout = DEFAULT_RPC_TIMEOUT
        if raw_timeout:
            try:
                rpc_timeout = float(raw_timeout)
            except ValueError as exc:
                raise ConfigError(f"Invalid RPC_TIMEOUT={raw_timeout!r}. Expected seconds.") from exc
            if rpc_timeout <= 0:
                raise ConfigError("RPC_TIMEOUT must be greater than zero.")

        private_key = (env.get("PRIVATE_KEY") or "").strip() or None

        return cls(
            rpc_url=rpc_url,
            chain=ChainIdentity(chain_id=chain_id, name="LocalTestChain", rpc_urls=(rpc_url,)),
            private_key=private_key,
            rpc_timeout=rpc_timeout,
        )


# ---------------------------------------------------------------------------
# Client provider
# ---------------------------------------------------------------------------


@contextmanager
def _rpc_errors(action: str) -> Iterator[None]:
    """Re-raise web3 / transport / ABI failures as ChainRpcError."""
    try:
        yield
    except EVMWalletError:
        raise
    except (Web3Exception, requests.RequestException, ValueError, TypeError) as exc:
        raise ChainRpcError(f"{action} failed: {exc}") from exc


class SigningClient:
    """A web3 handle bound to one local account; built fresh per write call."""

    def __init__(self, w3: Web3, account: LocalAccount, chain: ChainIdentity) -> None:
        self.w3 = w3
        self.account = account
        self.chain = chain

    @property
    def address(self) -> str:
        return self.account.address

    def send(self, tx: dict[str, Any]) -> str:
        """Fill missing fields, sign locally and broadcast. Returns the 0x tx hash."""
        tx = dict(tx)
        tx.setdefault("from", self.account.address)
        tx.setdefault("chainId", self.chain.chain_id)
        if "nonce" not in tx:
            tx["nonce"] = self.w3.eth.get_transaction_count(self.account.address, "pending")
        if "gas" not in tx:
            tx["gas"] = self.w3.eth.estimate_gas(tx)
        if not {"gasPrice", "maxFeePerGas"} & tx.keys():
            tx["gasPrice"] = self.w3.eth.gas_price

        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)


class ChainClientProvider:
    """Owns the memoized read client and builds signing clients on demand."""

    def __init__(self, config: EVMConfig) -> None:
        self.config = config
        self._read_client: Web3 | None = None

    def _make_web3(self) -> Web3:
        provider = Web3.HTTPProvider(
            self.config.rpc_url,
            request_kwargs={"timeout": self.config.rpc_timeout},
            exception_retry_configuration=None,
        )
        return Web3(provider)

    def get_read_client(self) -> Web3:
        # Construction performs no network I/O; the first RPC call does.
        if self._read_client is None:
            self._read_client = self._make_web3()
        return self._read_client

    def get_signing_client(self, private_key: str) -> SigningClient:
        if not isinstance(private_key, str) or not _PRIVATE_KEY_RE.match(private_key.strip()):
            raise InvalidKeyError("PRIVATE_KEY is not a 32-byte hex private key.")
        try:
            account = Account.from_key(private_key.strip())
        except (ValueError, TypeError, KeyValidationError) as exc:
            raise InvalidKeyError(f"PRIVATE_KEY is not a valid private key: {exc}") from exc
        return SigningClient(self._make_web3(), account, self.config.chain)


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------


def amount_to_raw(amount: str, decimals: int) -> int:
    """Convert a human-readable decimal string to the smallest unit, exactly."""
    if decimals < 0:
        raise ValueError("decimals must be non-negative")
    text = str(amount).strip()
    with localcontext() as ctx:
        ctx.prec = max(28, len(text) + decimals + 2)
        try:
            value = Decimal(text)
        except ArithmeticError as exc:
            raise ValueError(f"Invalid amount {amount!r}. Must be a decimal number.") from exc
        if not value.is_finite():
            raise ValueError(f"Invalid amount {amount!r}. Must be a decimal number.")
        scaled = value.scaleb(decimals).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(scaled)


def raw_to_amount(raw: int, decimals: int) -> str:
    """Inverse of amount_to_raw: 1500000 with 6 decimals -> '1.5'."""
    sign = "-" if raw < 0 else ""
    whole, frac = divmod(abs(int(raw)), 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals else ""
    if frac_str:
        return f"{sign}{whole}.{frac_str}"
    return f"{sign}{whole}"


def format_eth_balance(balance_wei: int, unit: EthUnit = "ether") -> str:
    if unit == "wei":
        return str(balance_wei)
    return raw_to_amount(balance_wei, UNIT_DECIMALS[unit])


def format_token_amount(raw: int, decimals: int) -> str:
    return f"{raw_to_amount(raw, decimals)} tokens ({raw} raw)"


# ---------------------------------------------------------------------------
# Read operations
# ---------------------------------------------------------------------------


def _erc20(w3: Web3, token_address: str) -> Any:
    return w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)


def get_eth_balance(w3: Web3, address: str) -> int:
    with _rpc_errors("eth_getBalance"):
        return int(w3.eth.get_balance(Web3.to_checksum_address(address)))


def erc20_balance_of(w3: Web3, token_address: str, account: str) -> int:
    with _rpc_errors("balanceOf"):
        contract = _erc20(w3, token_address)
        return int(contract.functions.balanceOf(Web3.to_checksum_address(account)).call())


def erc20_decimals(w3: Web3, token_address: str) -> int:
    with _rpc_errors("decimals"):
        return int(_erc20(w3, token_address).functions.decimals().call())


def erc20_allowance(w3: Web3, token_address: str, owner: str, spender: str) -> int:
    with _rpc_errors("allowance"):
        contract = _erc20(w3, token_address)
        return int(
            contract.functions.allowance(
                Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
            ).call()
        )


def _find_function(abi: list[dict[str, Any]], function_name: str, arg_count: int) -> dict[str, Any]:
    candidates = [
        entry
        for entry in abi
        if isinstance(entry, dict)
        and entry.get("type", "function") == "function"
        and entry.get("name") == function_name
    ]
    if not candidates:
        raise ChainRpcError(f"Function {function_name!r} not found on contract ABI.")
    for entry in candidates:
        if len(entry.get("inputs") or []) == arg_count:
            return entry
    raise ChainRpcError(
        f"Function {function_name!r} does not accept {arg_count} argument(s)."
    )


def to_jsonable(value: Any, abi_param: Mapping[str, Any] | None = None) -> Any:
    """
    Make a decoded ABI value JSON-safe.

    Integers declared 64 bits or wider become decimal strings, bytes become
    0x hex, tuples with fully named components become objects.
    """
    abi_type = (abi_param or {}).get("type", "")

    if abi_type.endswith("]"):
        inner = dict(abi_param or {}, type=abi_type[: abi_type.rindex("[")])
        return [to_jsonable(item, inner) for item in value]

    if abi_type == "tuple" and isinstance(value, (tuple, list)):
        components = (abi_param or {}).get("components") or []
        if len(components) == len(value):
            items = [to_jsonable(item, comp) for item, comp in zip(value, components)]
            names = [comp.get("name") for comp in components]
            if all(names):
                return dict(zip(names, items))
            return items

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        match = _INT_TYPE_RE.match(abi_type)
        bits = int(match.group(1) or 256) if match else 256
        return str(value) if bits >= 64 else value
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (tuple, list)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    return value


def call_contract(
    w3: Web3,
    address: str,
    abi: list[dict[str, Any]],
    function_name: str,
    args: Sequence[Any] = (),
) -> Any:
    """Read-only eth_call of an arbitrary function; returns a JSON-safe result."""
    entry = _find_function(abi, function_name, len(args))
    inputs = entry.get("inputs") or []

    with _rpc_errors(f"call {function_name}"):
        call_args = [
            Web3.to_checksum_address(arg) if param.get("type") == "address" and isinstance(arg, str) else arg
            for arg, param in zip(args, inputs)
        ]
        contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        result = contract.functions[function_name](*call_args).call()

    outputs = entry.get("outputs") or []
    if len(outputs) == 1:
        return to_jsonable(result, outputs[0])
    if len(outputs) > 1 and isinstance(result, (tuple, list)):
        return [to_jsonable(item, param) for item, param in zip(result, outputs)]
    return to_jsonable(result)


# ---------------------------------------------------------------------------
# Write operations
# ---------------------------------------------------------------------------


def send_eth(signer: SigningClient, to: str, amount_wei: int) -> str:
    with _rpc_errors("send ETH"):
        tx_hash = signer.send({"to": Web3.to_checksum_address(to), "value": int(amount_wei)})
    log.info("ETH transfer broadcast from %s: %s", signer.address, tx_hash)
    return tx_hash


def erc20_write(
    signer: SigningClient,
    token_address: str,
    function_name: Literal["transfer", "approve"],
    target: str,
    amount_raw: int,
) -> str:
    """Broadcast ERC-20 transfer(to, amount) or approve(spender, amount)."""
    with _rpc_errors(function_name):
        contract = _erc20(signer.w3, token_address)
        fn = getattr(contract.functions, function_name)
        tx = fn(Web3.to_checksum_address(target), int(amount_raw)).build_transaction(
            {"from": signer.address, "chainId": signer.chain.chain_id}
        )
        tx_hash = signer.send(tx)
    log.info("ERC-20 %s broadcast on %s: %s", function_name, token_address, tx_hash)
    return tx_hash
