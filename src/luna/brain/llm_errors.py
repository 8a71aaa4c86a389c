"""
brain/llm_errors.py — Provider-normalised LLM exceptions

Chat backends translate whatever their SDK raises into one of these so the
service client can classify failures without knowing the provider.
"""

from __future__ import annotations

from typing import Optional


class LLMError(Exception):
    """Base exception for all LLM backend errors."""
    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Provider unreachable (DNS, refused connection, dropped socket)."""


class LLMRateLimitError(LLMError):
    """Rate limit or quota exhausted (429 / RESOURCE_EXHAUSTED)."""
    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider, status_code=429)
        self.retry_after = retry_after
