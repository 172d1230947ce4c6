"""Pre-execution risk check."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from limit_order_agent.advisory.models import RiskCheckContext, RiskCheckResult
from limit_order_agent.advisory.prompts import build_risk_check_prompt

if TYPE_CHECKING:
    from limit_order_agent.advisory.fallback import ProviderChain

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_CONFIDENCE = 0.7
DEFAULT_CONFIDENCE = 0.5
UNPARSEABLE_CONFIDENCE = 0.3


def parse_risk_response(text: str, provider: str) -> RiskCheckResult:
    """Parse a ``{"execute", "confidence", "reasoning"}`` reply.

    Missing fields default to execute and 0.5 confidence. A reply that is
    not a JSON object defaults to execute with 0.3 confidence.
    """
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict):
        return RiskCheckResult(
            execute=True,
            confidence=UNPARSEABLE_CONFIDENCE,
            reasoning=f"AI response unparseable, defaulting to execute. Raw: {text[:100]}",
            provider=provider,
        )

    confidence = parsed.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, int | float):
        confidence = DEFAULT_CONFIDENCE
    return RiskCheckResult(
        execute=parsed.get("execute") is not False,
        confidence=float(confidence),
        reasoning=str(parsed.get("reasoning") or text),
        provider=provider,
    )


class RiskChecker:
    """Asks the provider chain whether a trade should proceed.

    Only an explicit veto above ``block_confidence`` blocks execution.
    Callers are expected to bound :meth:`check` with a timeout and treat
    any error as approval.
    """

    def __init__(self, chain: ProviderChain, *, block_confidence: float = DEFAULT_BLOCK_CONFIDENCE) -> None:
        self._chain = chain
        self._block_confidence = block_confidence

    @property
    def enabled(self) -> bool:
        return self._chain.enabled

    async def check(self, context: RiskCheckContext) -> RiskCheckResult:
        explanation = await self._chain.explain(build_risk_check_prompt(context))
        result = parse_risk_response(explanation.text, explanation.provider)
        logger.debug(
            "Risk check via %s: execute=%s confidence=%.2f",
            result.provider,
            result.execute,
            result.confidence,
        )
        return result

    def should_block(self, result: RiskCheckResult) -> bool:
        return not result.execute and result.confidence > self._block_confidence
