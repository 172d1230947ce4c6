"""Execution-time quotes for the real trade size."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from limit_order_agent.chain.abi import LENS_GET_AMOUNT_OUT, checksum
from limit_order_agent.monitor.models import FreshQuote

if TYPE_CHECKING:
    from limit_order_agent.chain.client import ChainClient

logger = logging.getLogger(__name__)


class QuoteFetcher:
    """Reads a fresh lens quote at execution time.

    Unlike the 1-unit probe quotes in a snapshot, this quote is taken for
    the actual input amount and is never cached.
    """

    def __init__(self, client: ChainClient, *, lens_address: str) -> None:
        self._client = client
        self._lens = checksum(lens_address)

    async def fetch_fresh_quote(self, token: str, amount_in: int, *, is_buy: bool) -> FreshQuote:
        """Quote ``amount_in`` against the venue currently serving ``token``.

        Raises:
            ChainClientError: If the lens read fails.
        """
        router, amount_out = await self._client.call_function(
            self._lens,
            LENS_GET_AMOUNT_OUT,
            checksum(token),
            amount_in,
            is_buy,
        )
        quote = FreshQuote(router=str(router), amount_out=int(amount_out), timestamp=datetime.now(UTC))
        logger.debug(
            "Fresh quote %s %s amount_in=%d -> %d via %s",
            "buy" if is_buy else "sell",
            token,
            amount_in,
            quote.amount_out,
            quote.router,
        )
        return quote
