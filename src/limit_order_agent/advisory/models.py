"""Data models for the advisory service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

PLACEHOLDER_EXPLANATION = "AI explanation unavailable."
NO_PROVIDER = "none"


@dataclass(frozen=True)
class AiMessage:
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class Explanation:
    """Advisory text and the provider that produced it (``"none"`` on fallback)."""

    text: str
    provider: str

    @property
    def available(self) -> bool:
        return self.provider != NO_PROVIDER


@dataclass(frozen=True)
class RiskCheckContext:
    """Structured trade context handed to the risk check.

    Amounts are pre-formatted display strings; the model only ever sees
    numbers the agent computed.
    """

    token_symbol: str
    token_name: str
    direction: str
    trigger_type: str
    input_amount: str
    estimated_output: str
    current_price: str
    slippage_bps: int
    is_graduated: bool
    progress: str
    volume: str | None = None
    holder_count: int | None = None


@dataclass(frozen=True)
class RiskCheckResult:
    execute: bool
    confidence: float
    reasoning: str
    provider: str = NO_PROVIDER
