"""LLM providers for execution explanations and risk checks.

Every provider implements one operation, :meth:`AdvisoryProvider.generate_explanation`,
over a plain aiohttp session. Failures raise :class:`AdvisoryError`; the
fallback chain decides what to do with them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import aiohttp

from limit_order_agent.advisory.models import AiMessage

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 256
DEFAULT_TIMEOUT_SECONDS = 10.0

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
GROQ_MODEL = "llama-3.3-70b-versatile"
OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_MODEL = "gpt-4o"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MODEL = "claude-sonnet-4-5"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_MODEL = "gemini-1.5-pro"


class AdvisoryError(Exception):
    """Raised when a provider cannot produce text."""


class AdvisoryProvider(ABC):
    """A single LLM backend.

    Subclasses build the request body for their API and extract the text
    from the response; session handling and error mapping live here.
    """

    name: str

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if not api_key:
            raise ValueError(f"{type(self).__name__} requires an API key")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._max_tokens = max_tokens
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            self._owns_session = True
        return self._session

    async def _post_json(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(url, json=body, headers=headers) as resp:
                if resp.status != 200:
                    raise AdvisoryError(f"{self.name} returned HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise AdvisoryError(f"{self.name} request failed: {e}") from e
        if not isinstance(payload, dict):
            raise AdvisoryError(f"{self.name} returned a non-object payload")
        return payload

    @abstractmethod
    async def generate_explanation(self, messages: Sequence[AiMessage]) -> str:
        """Return the model's text reply to ``messages``."""

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


def _require_text(provider: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise AdvisoryError(f"{provider} returned no text")
    return value.strip()


class OpenAICompatibleProvider(AdvisoryProvider):
    """Chat-completions API shared by OpenAI and Groq."""

    def __init__(self, name: str, api_key: str, *, base_url: str, model: str, **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self.name = name
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._model = model

    async def generate_explanation(self, messages: Sequence[AiMessage]) -> str:
        payload = await self._post_json(
            self._url,
            {
                "model": self._model,
                "max_tokens": self._max_tokens,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
            },
            {"Authorization": f"Bearer {self._api_key}"},
        )
        try:
            text = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AdvisoryError(f"{self.name} response missing choices") from e
        return _require_text(self.name, text)


def groq_provider(api_key: str, **kwargs: Any) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider("groq", api_key, base_url=GROQ_BASE_URL, model=GROQ_MODEL, **kwargs)


def openai_provider(api_key: str, **kwargs: Any) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider("openai", api_key, base_url=OPENAI_BASE_URL, model=OPENAI_MODEL, **kwargs)


class AnthropicProvider(AdvisoryProvider):
    """Anthropic Messages API. The system message goes in its own field."""

    name = "claude"

    def __init__(self, api_key: str, *, model: str = ANTHROPIC_MODEL, **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self._model = model

    async def generate_explanation(self, messages: Sequence[AiMessage]) -> str:
        system = next((m.content for m in messages if m.role == "system"), "")
        payload = await self._post_json(
            ANTHROPIC_URL,
            {
                "model": self._model,
                "max_tokens": self._max_tokens,
                "system": system,
                "messages": [{"role": m.role, "content": m.content} for m in messages if m.role != "system"],
            },
            {"x-api-key": self._api_key, "anthropic-version": ANTHROPIC_VERSION},
        )
        blocks = payload.get("content") or []
        text = next((b.get("text") for b in blocks if isinstance(b, dict) and b.get("type") == "text"), None)
        return _require_text(self.name, text)


class GeminiProvider(AdvisoryProvider):
    """Gemini generateContent API. System and user text are sent as one turn."""

    name = "gemini"

    def __init__(self, api_key: str, *, model: str = GEMINI_MODEL, **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self._model = model

    async def generate_explanation(self, messages: Sequence[AiMessage]) -> str:
        system = next((m.content for m in messages if m.role == "system"), "")
        user = next((m.content for m in messages if m.role == "user"), "")
        payload = await self._post_json(
            f"{GEMINI_BASE_URL}/models/{self._model}:generateContent",
            {"contents": [{"role": "user", "parts": [{"text": f"{system}\n\n{user}"}]}]},
            {"x-goog-api-key": self._api_key},
        )
        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise AdvisoryError("gemini response missing candidates") from e
        return _require_text(self.name, text)
