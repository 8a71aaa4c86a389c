"""
brain/__init__.py — Luna Conversation Brain
"""

from __future__ import annotations

from luna.brain.llm_errors import LLMConnectionError, LLMError, LLMRateLimitError
from luna.brain.metrics import ServiceHealthMetrics
from luna.brain.types import (
    ChatHandle,
    ChatTurn,
    ExchangeResult,
    FailureKind,
    GenerationConfig,
    TurnRole,
)

__all__ = [
    "ConversationClientFactory",
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "ServiceHealthMetrics",
    "ChatHandle",
    "ChatTurn",
    "ExchangeResult",
    "FailureKind",
    "GenerationConfig",
    "TurnRole",
]


class ConversationClientFactory:

    @staticmethod
    def from_settings(settings):
        """
        Build a ConversationServiceClient from Settings.

        A missing GEMINI_API_KEY yields a client without a backend; its
        create() raises ConfigurationError, which the controller treats as
        fatal for the session.

        Example config.yaml:
            llm:
              model: gemini-2.5-flash
              timeout_seconds: 30
              max_input_chars: 4000
        """
        from luna.brain.service_client import ConversationServiceClient

        llm = settings.llm
        backend = None
        if settings.gemini_api_key:
            from luna.brain.gemini_client import GeminiChatBackend
            backend = GeminiChatBackend(
                api_key=settings.gemini_api_key,
                config=GenerationConfig(
                    model=llm.model,
                    temperature=llm.temperature,
                    top_p=llm.top_p,
                    top_k=llm.top_k,
                    max_output_tokens=llm.max_output_tokens,
                ),
            )

        return ConversationServiceClient(
            backend=backend,
            metrics=ServiceHealthMetrics(error_threshold=llm.unhealthy_error_threshold),
            timeout_seconds=llm.timeout_seconds,
            max_input_chars=llm.max_input_chars,
        )
