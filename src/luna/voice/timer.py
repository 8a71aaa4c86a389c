"""
voice/timer.py — Single-slot cancellable timer

Arming replaces whatever was pending, so there is never more than one
outstanding callback.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional


class SilenceTimer:
    """One pending callback at most, scheduled on the running loop."""

    def __init__(self, delay_seconds: float, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.delay_seconds = delay_seconds
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, callback: Callable[[], None]) -> None:
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()

        def _fire() -> None:
            self._handle = None
            callback()

        self._handle = loop.call_later(self.delay_seconds, _fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
