"""Minimal contract ABI codecs for the venue, token and multicall contracts.

Calls are encoded by hand with eth-abi rather than through web3 contract
objects so that several of them can be packed into one Multicall3
``aggregate3`` request and decoded independently.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

MAX_UINT256 = 2**256 - 1


class ABIDecodeError(ValueError):
    """Raised when call data or return data does not match a function spec."""


@dataclass(frozen=True)
class FunctionSpec:
    """A single contract function: name plus input and output ABI types."""

    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def encode(self, *args: Any) -> bytes:
        """Encode call data (selector + arguments)."""
        if len(args) != len(self.inputs):
            raise ValueError(f"{self.signature} expects {len(self.inputs)} arguments, got {len(args)}")
        return self.selector + encode(list(self.inputs), list(args))

    def decode_input(self, data: bytes) -> tuple[Any, ...]:
        """Decode call data produced by :meth:`encode`."""
        if data[:4] != self.selector:
            raise ABIDecodeError(f"Selector mismatch for {self.signature}")
        try:
            return tuple(decode(list(self.inputs), data[4:]))
        except Exception as e:
            raise ABIDecodeError(f"Cannot decode {self.signature} input: {e}") from e

    def decode_output(self, data: bytes) -> tuple[Any, ...]:
        """Decode return data."""
        if not data and self.outputs:
            raise ABIDecodeError(f"Empty return data for {self.signature}")
        try:
            return tuple(decode(list(self.outputs), data))
        except Exception as e:
            raise ABIDecodeError(f"Cannot decode {self.signature} output: {e}") from e


def checksum(address: str) -> str:
    return to_checksum_address(address)


# Lens
LENS_GET_AMOUNT_OUT = FunctionSpec("getAmountOut", ("address", "uint256", "bool"), ("address", "uint256"))
LENS_IS_GRADUATED = FunctionSpec("isGraduated", ("address",), ("bool",))
LENS_IS_LOCKED = FunctionSpec("isLocked", ("address",), ("bool",))
LENS_GET_PROGRESS = FunctionSpec("getProgress", ("address",), ("uint256",))

# ERC-20
ERC20_NAME = FunctionSpec("name", (), ("string",))
ERC20_SYMBOL = FunctionSpec("symbol", (), ("string",))
ERC20_TOTAL_SUPPLY = FunctionSpec("totalSupply", (), ("uint256",))
ERC20_BALANCE_OF = FunctionSpec("balanceOf", ("address",), ("uint256",))
ERC20_ALLOWANCE = FunctionSpec("allowance", ("address", "address"), ("uint256",))
ERC20_APPROVE = FunctionSpec("approve", ("address", "uint256"), ("bool",))

# Routers (bonding curve and DEX share the same entry points).
# buy((amountOutMin, token, to, deadline)) payable
ROUTER_BUY = FunctionSpec("buy", ("(uint256,address,address,uint256)",))
# sell((amountIn, amountOutMin, token, to, deadline))
ROUTER_SELL = FunctionSpec("sell", ("(uint256,uint256,address,address,uint256)",))

# Multicall3
MULTICALL3_AGGREGATE3 = FunctionSpec(
    "aggregate3",
    ("(address,bool,bytes)[]",),
    ("(bool,bytes)[]",),
)
