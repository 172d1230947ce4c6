"""Trigger evaluation.

`evaluate` is a pure function of (order, snapshot, now): no I/O, no
clock reads unless ``now`` is omitted, and no mutation. Checks run in a
fixed precedence:

1. expiration
2. availability guard (snapshot carries no venue data)
3. BUY safety gates (locked, graduated)
4. price derivation
5. trigger comparison (threshold equality counts as triggered)
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from limit_order_agent.monitor.models import (
    GRADUATION_EXEMPT_TRIGGERS,
    Direction,
    EvalResult,
    TokenChainState,
    TriggerType,
)
from limit_order_agent.pricing import bps_above, bps_below, current_price, market_cap, market_cap_usd

if TYPE_CHECKING:
    from limit_order_agent.storage.repos import OrderDTO

REASON_EXPIRED = "Order expired"
REASON_UNAVAILABLE = "Token state unavailable, skipping evaluation"
ABORT_LOCKED = "Token is currently locked on the bonding curve"
ABORT_GRADUATED = "Token graduated to DEX during monitoring"


def _waiting(reason: str) -> EvalResult:
    return EvalResult(triggered=False, reason=f"{reason}, waiting")


def _met(reason: str) -> EvalResult:
    return EvalResult(triggered=True, reason=f"{reason}, condition met")


def _compare_at_most(label: str, value: int, target: int) -> EvalResult:
    if value <= target:
        return _met(f"{label} {value} <= target {target}")
    return _waiting(f"{label} {value} > target {target}")


def _compare_at_least(label: str, value: int, target: int) -> EvalResult:
    if value >= target:
        return _met(f"{label} {value} >= target {target}")
    return _waiting(f"{label} {value} < target {target}")


def _usd_market_cap(state: TokenChainState) -> Decimal | None:
    if state.market is None or state.market.price_usd is None:
        return None
    return market_cap_usd(state.market.price_usd, state.total_supply)


def evaluate(order: OrderDTO, state: TokenChainState, *, now: datetime | None = None) -> EvalResult:
    """Decide whether ``order`` should fire against ``state``.

    Args:
        order: The order under evaluation.
        state: This tick's snapshot of the order's token.
        now: Evaluation instant; defaults to the current UTC time.

    Returns:
        The trigger decision. ``abort`` marks a safety veto for this cycle.
    """
    now = now or datetime.now(UTC)

    if now >= order.expires_at:
        return EvalResult(triggered=False, reason=REASON_EXPIRED)

    if state.looks_unavailable:
        return EvalResult(triggered=False, reason=REASON_UNAVAILABLE)

    if order.direction == Direction.BUY:
        if state.is_locked:
            return EvalResult(
                triggered=False,
                reason="Token is locked, buy orders cannot execute",
                abort=True,
                abort_reason=ABORT_LOCKED,
            )
        if state.is_graduated and order.trigger_type not in GRADUATION_EXEMPT_TRIGGERS:
            return EvalResult(
                triggered=False,
                reason="Token has graduated, bonding curve buy orders no longer valid",
                abort=True,
                abort_reason=ABORT_GRADUATED,
            )

    price = current_price(order.direction, state)

    try:
        trigger_type = TriggerType(order.trigger_type)
    except ValueError:
        return EvalResult(triggered=False, reason=f"Unknown trigger type: {order.trigger_type}")

    try:
        target = int(order.trigger_value)
    except ValueError:
        return EvalResult(triggered=False, reason=f"Invalid trigger value: {order.trigger_value!r}")

    if trigger_type == TriggerType.PRICE_BELOW:
        return _compare_at_most("Price", price, target)

    if trigger_type == TriggerType.PRICE_ABOVE:
        return _compare_at_least("Price", price, target)

    if trigger_type == TriggerType.PROGRESS_BELOW:
        return _compare_at_most("Progress", state.progress, target)

    if trigger_type == TriggerType.PROGRESS_ABOVE:
        return _compare_at_least("Progress", state.progress, target)

    if trigger_type == TriggerType.POST_GRADUATION:
        if state.is_graduated:
            return _met("Token has graduated to DEX")
        return _waiting("Token has not graduated yet")

    if trigger_type == TriggerType.MCAP_BELOW:
        return _compare_at_most("Market cap", market_cap(price, state.total_supply), target)

    if trigger_type == TriggerType.MCAP_ABOVE:
        return _compare_at_least("Market cap", market_cap(price, state.total_supply), target)

    if trigger_type in (TriggerType.MCAP_BELOW_USD, TriggerType.MCAP_ABOVE_USD):
        mcap_usd = _usd_market_cap(state)
        if mcap_usd is None:
            return _waiting("No USD market data for token")
        if trigger_type == TriggerType.MCAP_BELOW_USD:
            if mcap_usd <= target:
                return _met(f"USD market cap {mcap_usd:.2f} <= target {target}")
            return _waiting(f"USD market cap {mcap_usd:.2f} > target {target}")
        if mcap_usd >= target:
            return _met(f"USD market cap {mcap_usd:.2f} >= target {target}")
        return _waiting(f"USD market cap {mcap_usd:.2f} < target {target}")

    if trigger_type == TriggerType.DCA_INTERVAL:
        if order.last_executed_at is None:
            return _met("First DCA execution")
        elapsed_ms = int((now - order.last_executed_at).total_seconds() * 1000)
        if elapsed_ms >= target:
            return _met(f"DCA interval elapsed ({elapsed_ms}ms >= {target}ms)")
        return _waiting(f"Next DCA in {target - elapsed_ms}ms")

    # Remaining types compare against a bps-adjusted reference.
    if target < 0 or (trigger_type != TriggerType.TAKE_PROFIT and target > 10_000):
        return EvalResult(triggered=False, reason=f"Invalid bps trigger value: {target}")

    if trigger_type == TriggerType.TRAILING_STOP:
        if not order.peak_price:
            return _waiting("No peak price recorded yet")
        threshold = bps_below(order.peak_price, target)
        label = f"Price {price} vs trailing threshold {threshold} (peak {order.peak_price}, drop {target} bps)"
        return _met(label) if price <= threshold else _waiting(label)

    if not order.reference_price:
        return _waiting("No reference price recorded")

    if trigger_type == TriggerType.TAKE_PROFIT:
        threshold = bps_above(order.reference_price, target)
        label = f"Price {price} vs take-profit threshold {threshold} (ref {order.reference_price}, gain {target} bps)"
        return _met(label) if price >= threshold else _waiting(label)

    # STOP_LOSS and PRICE_DROP_PCT share the same comparison.
    threshold = bps_below(order.reference_price, target)
    label = f"Price {price} vs {trigger_type.value.lower()} threshold {threshold} (ref {order.reference_price}, drop {target} bps)"
    return _met(label) if price <= threshold else _waiting(label)
