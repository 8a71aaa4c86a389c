"""
voice/output.py — Speech Output Adapter

One utterance at a time: speak() while already speaking is a no-op, never a
queue. cancel() silences playback at once and emits nothing. Each utterance
gets a token; callbacks carrying an old token are dropped, so a cancelled
utterance can never report a late end or error.
"""

from __future__ import annotations

from typing import Callable, Optional

from luna.observability.logger import get_logger
from luna.voice.catalog import VoiceCatalog
from luna.voice.events import (
    AdapterEvent,
    OutputEnded,
    OutputErrorKind,
    OutputFailed,
    OutputStarted,
)
from luna.voice.synthesizers import SynthesizerBackend

log = get_logger(__name__)


class _UtteranceListener:
    def __init__(self, adapter: "SpeechOutputAdapter", token: int) -> None:
        self._adapter = adapter
        self._token = token

    def on_start(self) -> None:
        if self._adapter._is_current(self._token):
            self._adapter._emit(OutputStarted())

    def on_end(self) -> None:
        if self._adapter._is_current(self._token):
            self._adapter._speaking = False
            self._adapter._emit(OutputEnded())

    def on_error(self, kind: OutputErrorKind) -> None:
        if self._adapter._is_current(self._token):
            self._adapter._speaking = False
            log.warning("output.failed", kind=str(kind))
            self._adapter._emit(OutputFailed.of(OutputErrorKind(kind)))


class SpeechOutputAdapter:
    """Single-utterance speech output over a SynthesizerBackend."""

    def __init__(
        self,
        backend: SynthesizerBackend,
        emit: Callable[[AdapterEvent], None],
        catalog: Optional[VoiceCatalog] = None,
    ) -> None:
        self._backend = backend
        self._emit = emit
        self._catalog = catalog
        self._speaking = False
        self._token = 0

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def supported(self) -> bool:
        return bool(self._backend.supported)

    def speak(
        self,
        text: str,
        voice_id: Optional[str] = None,
        rate: float = 1.0,
        pitch: float = 1.0,
        volume: float = 1.0,
    ) -> bool:
        """Start speaking ``text``. Returns False when nothing was started."""
        if self._speaking:
            log.debug("output.speak_ignored", reason="already speaking")
            return False
        if not self.supported:
            log.debug("output.speak_ignored", reason="unsupported")
            return False
        if not text or not text.strip():
            return False

        if voice_id and self._catalog is not None and self._catalog.get(voice_id) is None:
            log.info("output.voice_unknown", voice_id=voice_id)
            voice_id = None

        self._token += 1
        self._speaking = True
        listener = _UtteranceListener(self, self._token)
        try:
            self._backend.speak(text, voice_id, rate, pitch, volume, listener)
        except Exception as e:
            log.error("output.speak_error", error=str(e), error_type=type(e).__name__)
            self._speaking = False
            self._token += 1
            self._emit(OutputFailed.of(OutputErrorKind.UNKNOWN))
            return False
        log.info("output.speaking", length=len(text), voice_id=voice_id, rate=rate)
        return True

    def cancel(self) -> None:
        if not self._speaking:
            return
        self._token += 1
        self._speaking = False
        try:
            self._backend.cancel()
        except Exception as e:
            log.warning("output.cancel_error", error=str(e))
        log.info("output.cancelled")

    def _is_current(self, token: int) -> bool:
        return self._speaking and token == self._token

    def __repr__(self) -> str:
        return f"<SpeechOutputAdapter speaking={self._speaking} supported={self.supported}>"
