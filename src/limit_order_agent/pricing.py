"""Fixed-point price arithmetic.

All on-chain amounts are unsigned integers with 18 decimals ("wad").
Prices are expressed as native-currency wei per whole token, also in wad,
so comparisons against trigger values never touch floating point.
"""

from __future__ import annotations

from decimal import Decimal

from limit_order_agent.monitor.models import Direction, TokenChainState

WAD = 10**18
BPS_DENOMINATOR = 10_000

# Amount used by the lens probe quotes in every snapshot (1 whole unit).
PROBE_AMOUNT = WAD


def _check_bps(bps: int) -> None:
    if not 0 <= bps <= BPS_DENOMINATOR:
        raise ValueError(f"bps must be within 0..{BPS_DENOMINATOR}, got {bps}")


def price_per_token(amount_in: int, amount_out: int) -> int:
    """Return ``amount_in * 1e18 / amount_out``, or 0 when ``amount_out`` is 0."""
    if amount_out == 0:
        return 0
    return amount_in * WAD // amount_out


def current_price(direction: Direction, state: TokenChainState) -> int:
    """Derive the comparison price for an order side from a snapshot.

    BUY prices the token by how many tokens one native unit buys; SELL by
    how much native currency one token returns.
    """
    if direction == Direction.BUY:
        return price_per_token(PROBE_AMOUNT, state.buy_amount_out)
    return price_per_token(state.sell_amount_out, PROBE_AMOUNT)


def market_cap(price: int, total_supply: int) -> int:
    """Market cap in native wei for a wad price and raw total supply."""
    return price * total_supply // WAD


def market_cap_usd(price_usd: Decimal, total_supply: int) -> Decimal:
    return price_usd * Decimal(total_supply) / Decimal(WAD)


def bps_below(value: int, bps: int) -> int:
    """``value * (10000 - bps) / 10000``."""
    _check_bps(bps)
    return value * (BPS_DENOMINATOR - bps) // BPS_DENOMINATOR


def bps_above(value: int, bps: int) -> int:
    """``value * (10000 + bps) / 10000``.

    Take-profit targets may exceed 100%, so only negative bps are rejected.
    """
    if bps < 0:
        raise ValueError(f"bps must be non-negative, got {bps}")
    return value * (BPS_DENOMINATOR + bps) // BPS_DENOMINATOR


def scale_amount(per_unit_out: int, amount_in: int) -> int:
    """Linearly project a 1-unit probe quote to ``amount_in``."""
    return per_unit_out * amount_in // PROBE_AMOUNT


def format_ether(wei: int) -> Decimal:
    """Exact decimal representation of a wad amount."""
    return Decimal(wei).scaleb(-18).normalize() if wei else Decimal(0)


def format_progress(progress_bps: int) -> str:
    return f"{Decimal(progress_bps) / 100:.2f}%"
