"""
brain/gemini_client.py — Google Gemini chat backend

Uses the `google-genai` SDK (google.genai) async chat sessions: one
AsyncChat per ChatHandle, seeded with the persona as system instruction and
the prior exchange as history.

Install: pip install google-genai
Get key: https://aistudio.google.com/app/apikey
"""

from __future__ import annotations

from typing import Any, Optional

from google import genai
from google.genai import types as genai_types

from luna.brain.llm_errors import LLMConnectionError, LLMError, LLMRateLimitError
from luna.brain.service_client import ChatBackend
from luna.brain.types import ChatTurn, GenerationConfig, TurnRole
from luna.exceptions import ConfigurationError
from luna.observability.logger import get_logger

log = get_logger(__name__)

_KEY_PREFIX = "AIza"

# Matched as substrings of the lowercased SDK error text.
_RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "quota", "rate limit", "rate_limit", "ratelimit")


class GeminiChatBackend(ChatBackend):
    """
    Google Gemini chat backend.

    Requires: pip install google-genai
    """

    provider = "gemini"

    def __init__(self, api_key: str, config: Optional[GenerationConfig] = None):
        if not api_key or not api_key.strip():
            raise ConfigurationError(
                "Gemini API key is not set. Add GEMINI_API_KEY to your .env file."
            )
        if not api_key.startswith(_KEY_PREFIX):
            log.warning("gemini.api_key.unexpected_format")
        self._config = config or GenerationConfig()
        self._client = genai.Client(api_key=api_key)

    def open_chat(self, persona_prompt: str, history: list[ChatTurn]) -> Any:
        gen_config = genai_types.GenerateContentConfig(
            system_instruction=persona_prompt,
            temperature=self._config.temperature,
            top_p=self._config.top_p,
            top_k=self._config.top_k,
            max_output_tokens=self._config.max_output_tokens,
        )
        log.debug("gemini.chat.open", model=self._config.model, history_turns=len(history))
        return self._client.aio.chats.create(
            model=self._config.model,
            config=gen_config,
            history=self._to_provider_history(history),
        )

    async def send_message(self, chat: Any, text: str) -> str:
        try:
            response = await chat.send_message(text)
        except Exception as e:
            self._raise_normalised(e)
        return response.text or ""

    # ── Private helpers ───────────────────────────────────────────────────────

    def _to_provider_history(self, history: list[ChatTurn]) -> list[genai_types.Content]:
        """Translate ChatTurn list → Gemini Contents (human → user, agent → model)."""
        contents: list[genai_types.Content] = []
        for turn in history:
            role = "user" if turn.role == TurnRole.HUMAN else "model"
            contents.append(genai_types.Content(
                role=role,
                parts=[genai_types.Part(text=turn.text)],
            ))
        return contents

    def _raise_normalised(self, exc: Exception) -> None:
        err_str = str(exc).lower()
        if any(marker in err_str for marker in _RATE_LIMIT_MARKERS):
            raise LLMRateLimitError(str(exc), provider="gemini") from exc
        if "network" in err_str or "connect" in err_str or isinstance(exc, ConnectionError):
            raise LLMConnectionError(str(exc), provider="gemini") from exc
        raise LLMError(str(exc), provider="gemini") from exc

    def __repr__(self) -> str:
        return f"<GeminiChatBackend model={self._config.model}>"
