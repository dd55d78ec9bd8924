"""
Argument schemas for the EVM wallet MCP tools.

Each tool has one frozen pydantic model; `validate()` turns raw MCP arguments
into that model or raises ValidationError listing every violated field.
`TOOLS` is the advertised tool list, with input schemas generated from the
same models.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, List, Literal, Mapping, Union

from mcp.types import Tool
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic import ValidationError as PydanticValidationError

from evm_wallet import UnknownToolError, ValidationError

Address = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^0x[0-9a-fA-F]{40}$")]
Amount = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^\d+(\.\d+)?$")]


class ToolArgs(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class GetEthBalanceArgs(ToolArgs):
    address: Address = Field(description="Hex-encoded EVM address whose ETH balance will be returned")
    unit: Literal["wei", "ether", "gwei"] = Field(
        default="ether", description="Unit the balance is formatted in"
    )


class GetErc20BalanceArgs(ToolArgs):
    tokenAddress: Address = Field(description="ERC-20 contract address")
    accountAddress: Address = Field(description="Account whose token balance will be returned")


class SendEthArgs(ToolArgs):
    to: Address = Field(description="Recipient address")
    amountEth: Amount = Field(description="Amount of ETH to send, human readable (e.g. '0.1')")


class CallContractArgs(ToolArgs):
    address: Address = Field(description="Contract address")
    abi: Union[str, List[dict[str, Any]]] = Field(
        description="ABI of the contract. Can be provided as a JSON string or an already parsed array."
    )
    functionName: str = Field(min_length=1, description="Name of the view/pure function to invoke")
    args: List[Any] = Field(default_factory=list, description="Arguments to pass to the function")

    @field_validator("abi", mode="after")
    @classmethod
    def _parse_abi(cls, value: Union[str, List[dict[str, Any]]]) -> List[dict[str, Any]]:
        if not isinstance(value, str):
            return value
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"abi is not valid JSON: {exc.msg}") from exc
        if not isinstance(parsed, list) or not all(isinstance(item, dict) for item in parsed):
            raise ValueError("abi JSON must be an array of ABI entries")
        return parsed


class Erc20TransferArgs(ToolArgs):
    tokenAddress: Address = Field(description="ERC-20 contract address")
    to: Address = Field(description="Recipient address")
    amount: Amount = Field(
        description=(
            "Amount of tokens to transfer, expressed in human-readable units "
            "(will be converted using the token's decimals)"
        )
    )


class Erc20ApproveArgs(ToolArgs):
    tokenAddress: Address = Field(description="ERC-20 contract address")
    spender: Address = Field(description="Spender address that will receive the allowance")
    amount: Amount = Field(
        description="Allowance amount in human-readable units. Use '0' to revoke an existing allowance."
    )


class Erc20AllowanceArgs(ToolArgs):
    tokenAddress: Address = Field(description="ERC-20 contract address")
    owner: Address = Field(description="Token holder address")
    spender: Address = Field(description="Spender address")


class GetRpcUrlArgs(ToolArgs):
    pass


# name -> (description, argument model)
REGISTRY: dict[str, tuple[str, type[ToolArgs]]] = {
    "get_eth_balance": ("Return the ETH balance of the given address.", GetEthBalanceArgs),
    "get_erc20_balance": ("Return the ERC-20 token balance for a wallet.", GetErc20BalanceArgs),
    "send_eth": (
        "Send a test transaction transferring ETH from one account to another "
        "(testnet / local only).",
        SendEthArgs,
    ),
    "call_contract": (
        "Execute a read-only call against any smart-contract function by supplying "
        "the ABI & arguments.",
        CallContractArgs,
    ),
    "erc20_transfer": ("Transfer ERC-20 tokens (testnet / local only).", Erc20TransferArgs),
    "erc20_approve": ("Set or change ERC-20 allowances (testnet / local only).", Erc20ApproveArgs),
    "erc20_allowance": ("Query the current ERC-20 allowance for a spender.", Erc20AllowanceArgs),
    "get_rpc_url": ("Return the RPC URL this server is configured to use.", GetRpcUrlArgs),
}


def _describe(errors: list[dict[str, Any]]) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


def validate(tool_name: str, raw_args: Mapping[str, Any] | None) -> ToolArgs:
    """Parse raw MCP arguments for `tool_name` into its frozen argument model."""
    if tool_name not in REGISTRY:
        raise UnknownToolError(tool_name)
    _, model = REGISTRY[tool_name]

    if raw_args is None:
        raw_args = {}
    if not isinstance(raw_args, Mapping):
        raise ValidationError("Invalid arguments. Expected an object.")

    try:
        return model.model_validate(dict(raw_args))
    except PydanticValidationError as exc:
        errors = [
            {"loc": err["loc"], "msg": err["msg"], "type": err["type"]}
            for err in exc.errors(include_url=False)
        ]
        raise ValidationError(f"Invalid arguments for {tool_name}: {_describe(errors)}", errors) from exc


def input_schema(tool_name: str) -> dict[str, Any]:
    _, model = REGISTRY[tool_name]
    if not model.model_fields:
        return {"type": "object", "properties": {}, "required": []}
    return model.model_json_schema()


TOOLS: list[Tool] = [
    Tool(name=name, description=description, inputSchema=input_schema(name))
    for name, (description, _) in REGISTRY.items()
]
