"""Unit tests for evm_wallet: config, client provider, conversions, chain ops."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import evm_wallet  # noqa: E402
from evm_wallet import (  # noqa: E402
    ChainClientProvider,
    ChainRpcError,
    ConfigError,
    EVMConfig,
    InvalidKeyError,
    SigningClient,
    amount_to_raw,
    format_eth_balance,
    format_token_amount,
    raw_to_amount,
    to_jsonable,
)

# Well-known Hardhat / Anvil development account #0
DEV_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
DEV_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TOKEN = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


def _config(**env):
    return EVMConfig.from_env([], env)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_rpc_url_defaults_to_local_node():
    cfg = _config()
    assert cfg.rpc_url == "http://127.0.0.1:8545"
    assert cfg.private_key is None
    assert cfg.chain.chain_id == 1337
    assert cfg.chain.rpc_urls == ("http://127.0.0.1:8545",)


def test_rpc_url_env_then_cli_argument():
    assert _config(RPC_URL="http://node:8545").rpc_url == "http://node:8545"
    cfg = EVMConfig.from_env(["http://cli:8545"], {"RPC_URL": "http://node:8545"})
    assert cfg.rpc_url == "http://cli:8545"


def test_chain_identity_constants():
    chain = _config().chain
    assert chain.name == "LocalTestChain"
    assert chain.native_currency.symbol == "ETH"
    assert chain.native_currency.decimals == 18
    assert chain.multicall3_address == "0xcA11bde05977b3631167028862bE2a173976CA11"


def test_chain_id_and_timeout_overrides():
    cfg = _config(CHAIN_ID="31337", RPC_TIMEOUT="2.5", PRIVATE_KEY=f"  {DEV_KEY} ")
    assert cfg.chain.chain_id == 31337
    assert cfg.rpc_timeout == 2.5
    assert cfg.private_key == DEV_KEY


@pytest.mark.parametrize(
    "env",
    [{"CHAIN_ID": "local"}, {"RPC_TIMEOUT": "soon"}, {"RPC_TIMEOUT": "0"}],
)
def test_invalid_config_raises(env):
    with pytest.raises(ConfigError):
        _config(**env)


def test_private_key_not_in_repr():
    assert DEV_KEY not in repr(_config(PRIVATE_KEY=DEV_KEY))


# ---------------------------------------------------------------------------
# Client provider
# ---------------------------------------------------------------------------


def test_read_client_is_memoized():
    provider = ChainClientProvider(_config())
    first = provider.get_read_client()
    assert provider.get_read_client() is first
    assert first.provider.endpoint_uri == "http://127.0.0.1:8545"


def test_clients_use_configured_timeout_without_retries():
    cfg = _config(RPC_TIMEOUT="2.5")
    provider = ChainClientProvider(cfg)
    signer = provider.get_signing_client(DEV_KEY)

    for w3 in (provider.get_read_client(), signer.w3):
        assert w3.provider.exception_retry_configuration is None
        assert dict(w3.provider.get_request_kwargs())["timeout"] == cfg.rpc_timeout == 2.5


def test_signing_client_derives_account_and_is_not_cached():
    provider = ChainClientProvider(_config())
    signer = provider.get_signing_client(DEV_KEY)
    assert signer.address == DEV_ADDRESS
    assert provider.get_signing_client(DEV_KEY[2:]).address == DEV_ADDRESS
    assert provider.get_signing_client(DEV_KEY) is not signer
    assert signer.w3 is not provider.get_read_client()


@pytest.mark.parametrize("key", ["", "0x1234", "not-a-key", "0x" + "zz" * 32, "0x" + "ff" * 32])
def test_signing_client_rejects_malformed_keys(key):
    with pytest.raises(InvalidKeyError):
        ChainClientProvider(_config()).get_signing_client(key)


def _mock_w3(tx_hash=b"\x12" * 32):
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.estimate_gas.return_value = 21000
    w3.eth.gas_price = 10**9
    w3.eth.send_raw_transaction.return_value = tx_hash
    return w3


def test_signing_client_send_fills_signs_and_broadcasts():
    cfg = _config()
    account = evm_wallet.Account.from_key(DEV_KEY)
    w3 = _mock_w3()
    signer = SigningClient(w3, account, cfg.chain)

    tx_hash = signer.send({"to": TOKEN, "value": 5})

    assert tx_hash == "0x" + "12" * 32
    w3.eth.get_transaction_count.assert_called_once_with(DEV_ADDRESS, "pending")
    estimated = w3.eth.estimate_gas.call_args.args[0]
    assert estimated["chainId"] == 1337
    assert estimated["nonce"] == 7
    raw = w3.eth.send_raw_transaction.call_args.args[0]
    assert isinstance(raw, (bytes, bytearray)) and len(raw) > 0


def test_send_eth_wraps_rpc_failures():
    cfg = _config()
    w3 = _mock_w3()
    w3.eth.send_raw_transaction.side_effect = requests.ConnectionError("connection refused")
    signer = SigningClient(w3, evm_wallet.Account.from_key(DEV_KEY), cfg.chain)

    with pytest.raises(ChainRpcError, match="connection refused"):
        evm_wallet.send_eth(signer, DEV_ADDRESS, 10**18)


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "amount, decimals, raw",
    [
        ("1.5", 6, 1_500_000),
        ("0", 18, 0),
        ("0.1", 18, 10**17),
        ("10000", 18, 10_000 * 10**18),
        ("7", 0, 7),
        ("1.0000005", 6, 1_000_001),
        ("1.0000004", 6, 1_000_000),
        ("123456789012345678901234567890.123456789012345678", 18,
         123456789012345678901234567890123456789012345678),
    ],
)
def test_amount_to_raw(amount, decimals, raw):
    assert amount_to_raw(amount, decimals) == raw


def test_amount_to_raw_rejects_garbage():
    with pytest.raises(ValueError):
        amount_to_raw("one", 18)


@pytest.mark.parametrize("amount, decimals", [("1.5", 6), ("0.000001", 6), ("42", 0), ("3.14", 18)])
def test_raw_to_amount_inverts_amount_to_raw(amount, decimals):
    assert raw_to_amount(amount_to_raw(amount, decimals), decimals) == amount


def test_raw_to_amount_formatting():
    assert raw_to_amount(1_500_000, 6) == "1.5"
    assert raw_to_amount(0, 6) == "0"
    assert raw_to_amount(1, 18) == "0.000000000000000001"
    assert raw_to_amount(-2_500_000, 6) == "-2.5"


def test_format_eth_balance_units():
    balance = 10_000 * 10**18
    assert format_eth_balance(balance, "ether") == "10000"
    assert format_eth_balance(balance, "gwei") == "10000000000000"
    assert format_eth_balance(balance, "wei") == str(balance)
    assert format_eth_balance(1_234_567_890, "gwei") == "1.23456789"


def test_format_token_amount():
    assert format_token_amount(1_500_000, 6) == "1.5 tokens (1500000 raw)"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def test_get_eth_balance_checksums_address():
    w3 = MagicMock()
    w3.eth.get_balance.return_value = 42
    assert evm_wallet.get_eth_balance(w3, DEV_ADDRESS.lower()) == 42
    w3.eth.get_balance.assert_called_once_with(DEV_ADDRESS)


def test_get_eth_balance_wraps_transport_errors():
    w3 = MagicMock()
    w3.eth.get_balance.side_effect = requests.ConnectionError("unreachable")
    with pytest.raises(ChainRpcError, match="eth_getBalance failed: unreachable"):
        evm_wallet.get_eth_balance(w3, DEV_ADDRESS)


def test_erc20_reads_use_contract_functions():
    w3 = MagicMock()
    functions = w3.eth.contract.return_value.functions
    functions.balanceOf.return_value.call.return_value = 1_500_000
    functions.decimals.return_value.call.return_value = 6
    functions.allowance.return_value.call.return_value = 10

    assert evm_wallet.erc20_balance_of(w3, TOKEN, DEV_ADDRESS) == 1_500_000
    assert evm_wallet.erc20_decimals(w3, TOKEN) == 6
    assert evm_wallet.erc20_allowance(w3, TOKEN, DEV_ADDRESS, TOKEN) == 10
    functions.balanceOf.assert_called_once_with(DEV_ADDRESS)


VIEW_ABI = [
    {
        "type": "function",
        "name": "totalSupply",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getReserves",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
    },
    {
        "type": "function",
        "name": "owner",
        "stateMutability": "view",
        "inputs": [{"name": "who", "type": "address"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]


def test_call_contract_missing_function_never_touches_chain():
    w3 = MagicMock()
    with pytest.raises(ChainRpcError, match="not found"):
        evm_wallet.call_contract(w3, TOKEN, VIEW_ABI, "mint", [])
    w3.eth.contract.assert_not_called()


def test_call_contract_wrong_arity():
    with pytest.raises(ChainRpcError, match="does not accept 2"):
        evm_wallet.call_contract(MagicMock(), TOKEN, VIEW_ABI, "totalSupply", [1, 2])


def test_call_contract_stringifies_wide_integers():
    w3 = MagicMock()
    fn = w3.eth.contract.return_value.functions.__getitem__.return_value
    fn.return_value.call.return_value = 2**70
    assert evm_wallet.call_contract(w3, TOKEN, VIEW_ABI, "totalSupply") == str(2**70)
    w3.eth.contract.return_value.functions.__getitem__.assert_called_once_with("totalSupply")


def test_call_contract_multiple_outputs_and_address_args():
    w3 = MagicMock()
    fn = w3.eth.contract.return_value.functions.__getitem__.return_value
    fn.return_value.call.return_value = (5, 6, 1_700_000_000)
    assert evm_wallet.call_contract(w3, TOKEN, VIEW_ABI, "getReserves", []) == ["5", "6", 1_700_000_000]

    fn.return_value.call.return_value = DEV_ADDRESS
    evm_wallet.call_contract(w3, TOKEN, VIEW_ABI, "owner", [DEV_ADDRESS.lower()])
    fn.assert_called_with(DEV_ADDRESS)


def test_to_jsonable_types():
    assert to_jsonable(255, {"type": "uint8"}) == 255
    assert to_jsonable(2**63, {"type": "int64"}) == str(2**63)
    assert to_jsonable(b"\x01\xff", {"type": "bytes"}) == "0x01ff"
    assert to_jsonable(True, {"type": "bool"}) is True
    assert to_jsonable([1, 2], {"type": "uint256[]"}) == ["1", "2"]
    struct = {
        "type": "tuple",
        "components": [{"name": "id", "type": "uint16"}, {"name": "amount", "type": "uint256"}],
    }
    assert to_jsonable((3, 10**20), struct) == {"id": 3, "amount": str(10**20)}
    unnamed = {"type": "tuple", "components": [{"type": "bool"}, {"type": "uint256"}]}
    assert to_jsonable((False, 1), unnamed) == [False, "1"]


def test_erc20_write_builds_and_sends():
    cfg = _config()
    w3 = _mock_w3(tx_hash=b"\xab" * 32)
    functions = w3.eth.contract.return_value.functions
    functions.approve.return_value.build_transaction.return_value = {
        "from": DEV_ADDRESS,
        "to": TOKEN,
        "data": "0x095ea7b3",
        "value": 0,
        "gas": 50_000,
        "gasPrice": 10**9,
        "chainId": 1337,
    }
    signer = SigningClient(w3, evm_wallet.Account.from_key(DEV_KEY), cfg.chain)

    tx_hash = evm_wallet.erc20_write(signer, TOKEN, "approve", DEV_ADDRESS.lower(), 0)

    assert tx_hash == "0x" + "ab" * 32
    functions.approve.assert_called_once_with(DEV_ADDRESS, 0)
    w3.eth.estimate_gas.assert_not_called()
