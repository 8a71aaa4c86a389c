"""
brain/metrics.py — Conversation service health metrics

An explicitly owned metrics object. The service client writes it; the turn
controller and the console only read it.
"""

from __future__ import annotations

import collections
from datetime import datetime, timezone
from typing import Optional

_MAX_SAMPLES = 100
_DEFAULT_ERROR_THRESHOLD = 10


class ServiceHealthMetrics:
    """Rolling counters for the AI exchange."""

    def __init__(self, error_threshold: int = _DEFAULT_ERROR_THRESHOLD) -> None:
        self.request_count: int = 0
        self.error_count: int = 0
        self.last_error: Optional[str] = None
        self.last_success_at: Optional[datetime] = None
        self._error_threshold = error_threshold
        self._response_times_ms: collections.deque[float] = collections.deque(maxlen=_MAX_SAMPLES)

    # ── Writers (service client only) ─────────────────────────────────────────

    def record_request(self) -> None:
        self.request_count += 1

    def record_success(self, latency_ms: float) -> None:
        self._response_times_ms.append(latency_ms)
        self.last_success_at = datetime.now(timezone.utc)

    def record_error(self, error: str) -> None:
        self.error_count += 1
        self.last_error = error

    # ── Readers ───────────────────────────────────────────────────────────────

    @property
    def response_times_ms(self) -> list[float]:
        return list(self._response_times_ms)

    @property
    def average_response_ms(self) -> float:
        if not self._response_times_ms:
            return 0.0
        return sum(self._response_times_ms) / len(self._response_times_ms)

    def is_healthy(self) -> bool:
        return self.error_count <= self._error_threshold

    def snapshot(self) -> dict:
        return {
            "request_count": self.request_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "average_response_ms": round(self.average_response_ms, 1),
            "healthy": self.is_healthy(),
        }
