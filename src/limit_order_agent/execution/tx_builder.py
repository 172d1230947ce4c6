"""Unsigned swap transaction encoding.

Both routers expose the same entry points:

- ``buy((amountOutMin, token, to, deadline))``, payable with the native input
- ``sell((amountIn, amountOutMin, token, to, deadline))``, no value

Every transaction carries an absolute deadline so a stuck transaction
cannot execute long after the decision to send it.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from limit_order_agent.chain.abi import ROUTER_BUY, ROUTER_SELL, checksum
from limit_order_agent.execution.router_selector import RouterType
from limit_order_agent.monitor.models import Direction

DEFAULT_DEADLINE_SECONDS = 300
DEFAULT_CHAIN_ID = 143


@dataclass(frozen=True)
class UnsignedTx:
    """A transaction ready for signing (nonce, gas and fees are added later)."""

    to: str
    data: str
    value: int
    chain_id: int

    def to_dict(self) -> dict[str, object]:
        """JSON-safe form, stored in audit entries and sent with notify-only events."""
        return {"to": self.to, "data": self.data, "value": str(self.value), "chainId": self.chain_id}


class TransactionBuilder:
    """Encodes buy/sell calls for the bonding-curve and DEX routers.

    Example:
        ```python
        builder = TransactionBuilder(
            bonding_curve_router=settings.contracts.bonding_curve_router,
            dex_router=settings.contracts.dex_router,
        )
        tx = builder.build_unsigned_tx(
            Direction.BUY, RouterType.DEX, 10**18, 990 * 10**18, token, agent_address
        )
        ```
    """

    def __init__(
        self,
        *,
        bonding_curve_router: str,
        dex_router: str,
        chain_id: int = DEFAULT_CHAIN_ID,
        deadline_seconds: int = DEFAULT_DEADLINE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._routers = {
            RouterType.BONDING_CURVE: checksum(bonding_curve_router),
            RouterType.DEX: checksum(dex_router),
        }
        self._chain_id = chain_id
        self._deadline_seconds = deadline_seconds
        self._clock = clock

    def router_address(self, router_type: RouterType) -> str:
        """Configured contract for a router family (also the approval spender)."""
        return self._routers[router_type]

    def deadline(self) -> int:
        return int(self._clock()) + self._deadline_seconds

    def _buy(self, router_type: RouterType, input_amount: int, amount_out_min: int, token: str, recipient: str) -> UnsignedTx:
        data = ROUTER_BUY.encode((amount_out_min, checksum(token), checksum(recipient), self.deadline()))
        return UnsignedTx(
            to=self._routers[router_type],
            data="0x" + data.hex(),
            value=input_amount,
            chain_id=self._chain_id,
        )

    def _sell(self, router_type: RouterType, input_amount: int, amount_out_min: int, token: str, recipient: str) -> UnsignedTx:
        data = ROUTER_SELL.encode(
            (input_amount, amount_out_min, checksum(token), checksum(recipient), self.deadline())
        )
        return UnsignedTx(
            to=self._routers[router_type],
            data="0x" + data.hex(),
            value=0,
            chain_id=self._chain_id,
        )

    def build_bonding_curve_buy(self, input_amount: int, min_tokens_out: int, token: str, recipient: str) -> UnsignedTx:
        return self._buy(RouterType.BONDING_CURVE, input_amount, min_tokens_out, token, recipient)

    def build_bonding_curve_sell(self, token_amount_in: int, min_native_out: int, token: str, recipient: str) -> UnsignedTx:
        return self._sell(RouterType.BONDING_CURVE, token_amount_in, min_native_out, token, recipient)

    def build_dex_buy(self, input_amount: int, min_tokens_out: int, token: str, recipient: str) -> UnsignedTx:
        return self._buy(RouterType.DEX, input_amount, min_tokens_out, token, recipient)

    def build_dex_sell(self, token_amount_in: int, min_native_out: int, token: str, recipient: str) -> UnsignedTx:
        return self._sell(RouterType.DEX, token_amount_in, min_native_out, token, recipient)

    def build_unsigned_tx(
        self,
        direction: Direction,
        router_type: RouterType,
        input_amount: int,
        amount_out_min: int,
        token: str,
        recipient: str,
    ) -> UnsignedTx:
        """Dispatch to the encoding path for ``direction`` x ``router_type``.

        Args:
            direction: BUY spends native currency, SELL spends tokens.
            router_type: Venue family to route through.
            input_amount: Native wei (BUY) or token units (SELL).
            amount_out_min: Minimum output floor from the slippage guard.
            token: Token address.
            recipient: Address receiving the output (the signer).
        """
        if input_amount <= 0:
            raise ValueError("input_amount must be positive")
        if amount_out_min < 0:
            raise ValueError("amount_out_min must be non-negative")
        if direction == Direction.BUY:
            return self._buy(router_type, input_amount, amount_out_min, token, recipient)
        return self._sell(router_type, input_amount, amount_out_min, token, recipient)
