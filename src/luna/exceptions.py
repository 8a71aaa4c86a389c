"""
exceptions.py — Luna Unified Error Hierarchy

All Luna-specific exceptions live here. Every layer raises typed subclasses
of LunaError — never bare Exception.

Import from here, not from individual modules:
    from luna.exceptions import ConfigurationError, ServiceError

Hierarchy:
    LunaError
    ├── ConfigurationError          fatal — blocks the whole session
    ├── CaptureError                recoverable — clears the in-flight utterance
    │   └── RecognizerStartError
    ├── ServiceError                recoverable — one apology message, no retry
    │   └── ExchangeInProgressError
    ├── OutputError                 recoverable — falls back to text-only
    ├── StorageError                silently degraded — logged only
    └── LLMError  (re-exported from brain.llm_errors)
        ├── LLMConnectionError
        └── LLMRateLimitError
"""

from __future__ import annotations

from luna.brain.llm_errors import (  # noqa: F401
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
)


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class LunaError(Exception):
    """Base class for all Luna exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

class ConfigurationError(LunaError):
    """A required credential or setting is missing. Fatal for the session."""


# ─────────────────────────────────────────────────────────────────────────────
# Speech capture
# ─────────────────────────────────────────────────────────────────────────────

class CaptureError(LunaError):
    """Base for speech capture errors."""

    def __init__(self, kind: str, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind)


class RecognizerStartError(CaptureError):
    """The recognizer backend refused to start in the requested locale."""


# ─────────────────────────────────────────────────────────────────────────────
# Conversation service
# ─────────────────────────────────────────────────────────────────────────────

class ServiceError(LunaError):
    """Base for conversation service errors."""


class ExchangeInProgressError(ServiceError):
    """send() was called while another call on the same handle is in flight."""


# ─────────────────────────────────────────────────────────────────────────────
# Speech output / storage
# ─────────────────────────────────────────────────────────────────────────────

class OutputError(LunaError):
    """Speech synthesis or playback failed."""


class StorageError(LunaError):
    """A session store read or write failed."""


__all__ = [
    "LunaError",
    "ConfigurationError",
    "CaptureError",
    "RecognizerStartError",
    "ServiceError",
    "ExchangeInProgressError",
    "OutputError",
    "StorageError",
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
]
