"""Slippage guard.

All arithmetic is integer bps; the minimum-output floor is always derived
from the freshest quote, never from the stale expectation.
"""

from __future__ import annotations

from dataclasses import dataclass

from limit_order_agent.pricing import BPS_DENOMINATOR, bps_below


@dataclass(frozen=True)
class SlippageCheck:
    acceptable: bool
    amount_out_min: int
    actual_slippage_bps: int


def apply_slippage(amount_out: int, slippage_bps: int) -> int:
    """Minimum acceptable output: ``amount_out * (10000 - bps) / 10000``.

    Raises:
        ValueError: If ``slippage_bps`` is outside 0..10000.
    """
    return bps_below(amount_out, slippage_bps)


def check_slippage_acceptable(expected_out: int, fresh_out: int, max_slippage_bps: int) -> tuple[bool, int]:
    """Compare a fresh quote against the expected output.

    Only shortfalls count as slippage. An expected output of zero is
    always unacceptable and reported as 10000 bps.

    Returns:
        ``(acceptable, actual_slippage_bps)``.
    """
    if expected_out == 0:
        return False, BPS_DENOMINATOR
    shortfall = max(0, expected_out - fresh_out)
    actual_bps = shortfall * BPS_DENOMINATOR // expected_out
    return actual_bps <= max_slippage_bps, actual_bps


def validate_slippage(expected_out: int, fresh_out: int, max_slippage_bps: int) -> SlippageCheck:
    acceptable, actual_bps = check_slippage_acceptable(expected_out, fresh_out, max_slippage_bps)
    return SlippageCheck(
        acceptable=acceptable,
        amount_out_min=apply_slippage(fresh_out, max_slippage_bps),
        actual_slippage_bps=actual_bps,
    )
