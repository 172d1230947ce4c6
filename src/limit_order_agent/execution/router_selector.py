"""Router classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class RouterType(str, Enum):
    BONDING_CURVE = "bonding_curve"
    DEX = "dex"


@dataclass(frozen=True)
class RouterSelection:
    """A venue address and the router family it belongs to."""

    address: str
    type: RouterType


class RouterSelector:
    """Classifies lens-reported router addresses.

    Only the configured DEX router is recognized explicitly; every other
    address is treated as the bonding curve. Addresses that match neither
    known router are logged, since the transaction is then sent to the
    configured bonding-curve router rather than to the reported address.
    """

    def __init__(self, *, dex_router: str, bonding_curve_router: str) -> None:
        self._dex = dex_router.lower()
        self._bonding_curve = bonding_curve_router.lower()

    def select(self, router_address: str) -> RouterSelection:
        normalized = router_address.lower()
        if normalized == self._dex:
            return RouterSelection(address=router_address, type=RouterType.DEX)
        if normalized != self._bonding_curve:
            logger.warning("Unrecognized router %s, defaulting to bonding curve", router_address)
        return RouterSelection(address=router_address, type=RouterType.BONDING_CURVE)
