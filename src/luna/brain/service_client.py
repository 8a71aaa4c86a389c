"""
brain/service_client.py — Conversation Service Client

Wraps the remote AI exchange for the turn controller:

  - create()   opens a stateful chat bound to one persona + prior history
  - precheck() enforces the input guards synchronously, no network call
  - send()     one timed exchange per handle, failures classified into a
               closed set of kinds, each with a fixed apology string

Provider specifics live behind ChatBackend (see brain/gemini_client.py).
There is no retry here: a failed exchange is reported once and the
controller surfaces it as a single system message.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

from luna.brain.llm_errors import LLMConnectionError, LLMError, LLMRateLimitError
from luna.brain.metrics import ServiceHealthMetrics
from luna.brain.types import ChatHandle, ChatTurn, ExchangeResult, FailureKind
from luna.exceptions import ConfigurationError, ExchangeInProgressError
from luna.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_INPUT_CHARS = 4000

EMPTY_INPUT_GUIDANCE = "I didn't catch that. Could you please share your thoughts again?"
TOO_LONG_GUIDANCE = (
    "That's quite a lot to process at once. "
    "Could you break that down into smaller thoughts for me?"
)

APOLOGIES: dict[FailureKind, str] = {
    FailureKind.TIMEOUT: "I'm taking a bit longer than usual to respond. Please try again.",
    FailureKind.QUOTA: "I'm experiencing high demand right now. Please try again in a few minutes.",
    FailureKind.CONNECTIVITY: (
        "I'm having trouble connecting right now. "
        "Please check your internet connection and try again."
    ),
    FailureKind.UNKNOWN: "I'm having a bit of trouble at the moment. Please try again in a little while.",
}


def apology_for(kind: FailureKind) -> str:
    return APOLOGIES[kind]


# ─────────────────────────────────────────────────────────────────────────────
# Backend contract
# ─────────────────────────────────────────────────────────────────────────────


class ChatBackend(ABC):
    """
    Abstract base for provider chat backends.

    Subclasses must implement:
      - open_chat()     -> provider chat object seeded with persona + history
      - send_message()  -> reply text; raise LLMError subclasses on failure
    """

    provider: str = "unknown"

    @abstractmethod
    def open_chat(self, persona_prompt: str, history: list[ChatTurn]) -> Any:
        ...

    @abstractmethod
    async def send_message(self, chat: Any, text: str) -> str:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# Failure classification
# ─────────────────────────────────────────────────────────────────────────────

_QUOTA_MARKERS = ("quota", "rate limit", "rate_limit", "resource_exhausted", "429")
_CONNECTIVITY_MARKERS = ("network", "connection", "connect", "unreachable", "dns")


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception from the exchange onto a FailureKind."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, LLMRateLimitError):
        return FailureKind.QUOTA
    if isinstance(exc, (LLMConnectionError, ConnectionError)):
        return FailureKind.CONNECTIVITY

    message = str(exc).lower()
    if "timeout" in message or "timed out" in message:
        return FailureKind.TIMEOUT
    if any(m in message for m in _QUOTA_MARKERS):
        return FailureKind.QUOTA
    if any(m in message for m in _CONNECTIVITY_MARKERS):
        return FailureKind.CONNECTIVITY
    return FailureKind.UNKNOWN


# ─────────────────────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────────────────────


class ConversationServiceClient:
    """
    Timed, classified access to a ChatBackend.

    Usage::

        client = ConversationServiceClient(GeminiChatBackend(api_key), metrics)
        handle = client.create(persona_prompt, prior_history)
        result = await client.send(handle, "I had a long day")
        if result.ok:
            print(result.text)
        else:
            print(apology_for(result.failure_kind))
    """

    def __init__(
        self,
        backend: Optional[ChatBackend],
        metrics: Optional[ServiceHealthMetrics] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_input_chars: int = MAX_INPUT_CHARS,
    ) -> None:
        self._backend = backend
        self.metrics = metrics or ServiceHealthMetrics()
        self._timeout_seconds = timeout_seconds
        self._max_input_chars = max_input_chars

    # ── Session creation ──────────────────────────────────────────────────────

    def create(self, persona_prompt: str, prior_history: Optional[list[ChatTurn]] = None) -> ChatHandle:
        """
        Open a chat bound to ``persona_prompt`` and ``prior_history``.

        Raises ConfigurationError when no backend (no usable credential) is
        available. Any other backend failure is wrapped in LLMError.
        """
        if self._backend is None:
            raise ConfigurationError("No conversation backend configured (missing API key).")

        if not self.is_healthy():
            log.warning("service.unhealthy", **self.metrics.snapshot())

        history = list(prior_history or [])
        try:
            chat = self._backend.open_chat(persona_prompt, history)
        except (ConfigurationError, LLMError):
            raise
        except Exception as e:
            self.metrics.record_error(f"create failed: {e}")
            log.error("service.create.failed", error=str(e), error_type=type(e).__name__)
            raise LLMError(str(e), provider=self._backend.provider) from e

        handle = ChatHandle(
            handle_id=f"chat_{uuid.uuid4().hex[:12]}",
            persona_prompt=persona_prompt,
            history=history,
            session=chat,
        )
        log.info("service.created", handle_id=handle.handle_id, history_turns=len(history))
        return handle

    # ── Input guards ──────────────────────────────────────────────────────────

    def precheck(self, text: str) -> Optional[str]:
        """Return a canned guidance reply if ``text`` must not be sent, else None."""
        if not text or not text.strip():
            return EMPTY_INPUT_GUIDANCE
        if len(text) > self._max_input_chars:
            return TOO_LONG_GUIDANCE
        return None

    # ── Exchange ──────────────────────────────────────────────────────────────

    async def send(self, handle: ChatHandle, text: str) -> ExchangeResult:
        """
        Send one message. Never raises for provider failures; they come back
        as ``ExchangeResult.failure(kind)``.
        """
        guidance = self.precheck(text)
        if guidance is not None:
            log.info("service.send.guarded", handle_id=handle.handle_id, length=len(text or ""))
            return ExchangeResult.canned(guidance)

        if handle.in_flight:
            raise ExchangeInProgressError(f"Chat {handle.handle_id} already has a call in flight")

        if not self.is_healthy():
            log.warning("service.degraded", error_count=self.metrics.error_count)

        handle.in_flight = True
        self.metrics.record_request()
        t0 = time.monotonic()
        try:
            reply = await asyncio.wait_for(
                self._backend.send_message(handle.session, text.strip()),
                timeout=self._timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify_failure(e)
            self.metrics.record_error(f"{kind.value}: {e}")
            log.error(
                "service.send.failed",
                handle_id=handle.handle_id,
                kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ExchangeResult.failure(kind)
        finally:
            handle.in_flight = False

        latency_ms = (time.monotonic() - t0) * 1000
        reply = (reply or "").strip()
        if not reply:
            self.metrics.record_error("empty response")
            log.error("service.send.empty", handle_id=handle.handle_id)
            return ExchangeResult.failure(FailureKind.UNKNOWN)

        self.metrics.record_success(latency_ms)
        log.info("service.send.complete", handle_id=handle.handle_id, latency_ms=round(latency_ms))
        return ExchangeResult.reply(reply, latency_ms=latency_ms)

    # ── Health ────────────────────────────────────────────────────────────────

    def is_healthy(self) -> bool:
        return self._backend is not None and self.metrics.is_healthy()

    def __repr__(self) -> str:
        return f"<ConversationServiceClient backend={self._backend!r}>"
