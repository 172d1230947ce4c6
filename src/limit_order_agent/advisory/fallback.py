"""Ordered provider fallback."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from limit_order_agent.advisory.models import NO_PROVIDER, PLACEHOLDER_EXPLANATION, AiMessage, Explanation
from limit_order_agent.advisory.providers import (
    AdvisoryError,
    AdvisoryProvider,
    AnthropicProvider,
    GeminiProvider,
    groq_provider,
    openai_provider,
)

if TYPE_CHECKING:
    from limit_order_agent.config import AdvisorySettings

logger = logging.getLogger(__name__)

AUTO = "auto"


class ProviderChain:
    """Tries providers in order until one answers.

    With ``preferred="auto"`` the starting provider rotates round-robin on
    every call; the rotation index belongs to this instance. A named
    preference moves that provider to the front and keeps the rest in
    their configured order.

    Example:
        ```python
        chain = ProviderChain([groq_provider(key)], preferred="auto")
        explanation = await chain.explain(messages)
        print(explanation.provider, explanation.text)
        ```
    """

    def __init__(self, providers: Sequence[AdvisoryProvider], *, preferred: str = AUTO) -> None:
        self._providers = list(providers)
        self._preferred = preferred
        self._auto_index = 0

    @classmethod
    def from_settings(cls, settings: AdvisorySettings) -> ProviderChain:
        """Build the chain from whichever API keys are configured."""
        kwargs = {"timeout_seconds": settings.timeout_seconds}
        providers: list[AdvisoryProvider] = []
        if settings.groq_api_key is not None:
            providers.append(groq_provider(settings.groq_api_key.get_secret_value(), **kwargs))
        if settings.anthropic_api_key is not None:
            providers.append(AnthropicProvider(settings.anthropic_api_key.get_secret_value(), **kwargs))
        if settings.openai_api_key is not None:
            providers.append(openai_provider(settings.openai_api_key.get_secret_value(), **kwargs))
        if settings.gemini_api_key is not None:
            providers.append(GeminiProvider(settings.gemini_api_key.get_secret_value(), **kwargs))
        return cls(providers, preferred=settings.preferred)

    @property
    def enabled(self) -> bool:
        return bool(self._providers)

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    def ordered(self) -> list[AdvisoryProvider]:
        """Provider order for the next call (advances the rotation in auto mode)."""
        if not self._providers:
            return []
        if self._preferred == AUTO:
            start = self._auto_index % len(self._providers)
            self._auto_index = (self._auto_index + 1) % len(self._providers)
            return self._providers[start:] + self._providers[:start]
        first = [p for p in self._providers if p.name == self._preferred]
        return first + [p for p in self._providers if p.name != self._preferred]

    async def explain(self, messages: Sequence[AiMessage]) -> Explanation:
        """First successful reply, or the placeholder with provider ``"none"``."""
        for provider in self.ordered():
            try:
                text = await provider.generate_explanation(messages)
            except AdvisoryError as e:
                logger.warning("Advisory provider %s failed, trying next: %s", provider.name, e)
                continue
            return Explanation(text=text, provider=provider.name)
        return Explanation(text=PLACEHOLDER_EXPLANATION, provider=NO_PROVIDER)

    async def aclose(self) -> None:
        for provider in self._providers:
            await provider.aclose()
