"""
voice/capture.py — Speech Capture Adapter

Owns one capture attempt at a time on top of a RecognizerBackend:

  - transcript: interim results replace the live segment, final results
    append to it; reset on every start()
  - endpointing: every result cancels the silence timer, a "speech paused"
    signal arms it, and if it fires uncancelled the adapter stops itself
  - finalization: at most once per attempt, trimmed, only when non-empty
  - locale fallback: primary → secondary exactly once for the adapter's life

Everything the adapter has to report goes out through ``emit`` as a typed
event (see voice/events.py). Nothing raises past this boundary.
"""

from __future__ import annotations

from typing import Callable, Optional

from luna.exceptions import RecognizerStartError
from luna.observability.logger import get_logger
from luna.voice.events import (
    AdapterEvent,
    AdapterFault,
    CaptureEnded,
    CaptureErrorKind,
    CaptureFailed,
    TranscriptUpdated,
    UtteranceFinalized,
)
from luna.voice.recognizers import RecognizerBackend
from luna.voice.timer import SilenceTimer

log = get_logger(__name__)

DEFAULT_PRIMARY_LOCALE = "hi-IN"
DEFAULT_SECONDARY_LOCALE = "en-US"
SILENCE_TIMEOUT_SECONDS = 1.5


class _AttemptListener:
    """Binds backend callbacks to one attempt so late ones can be dropped."""

    def __init__(self, adapter: "SpeechCaptureAdapter", attempt: int) -> None:
        self._adapter = adapter
        self._attempt = attempt

    def _live(self) -> bool:
        return self._adapter._is_live(self._attempt)

    def on_result(self, text: str, is_final: bool) -> None:
        if self._live():
            self._adapter._on_result(text, is_final)

    def on_speech_start(self) -> None:
        if self._live():
            self._adapter._on_speech_start()

    def on_speech_pause(self) -> None:
        if self._live():
            self._adapter._on_speech_pause()

    def on_error(self, kind: CaptureErrorKind, message: str = "") -> None:
        if self._live():
            self._adapter._on_error(CaptureErrorKind(kind), message)

    def on_fault(self, error: str) -> None:
        if self._live():
            self._adapter._on_fault(error)

    def on_end(self) -> None:
        if self._live():
            self._adapter._on_end()


class SpeechCaptureAdapter:
    """
    Continuous incremental recognition with silence endpointing.

    Usage::

        adapter = SpeechCaptureAdapter(WhisperRecognizer(), emit=queue.put_nowait)
        adapter.start()     # TranscriptUpdated ... UtteranceFinalized, CaptureEnded
        adapter.stop()      # finalize now with whatever has accumulated
        adapter.abort()     # cancel without finalizing
    """

    def __init__(
        self,
        backend: RecognizerBackend,
        emit: Callable[[AdapterEvent], None],
        primary_locale: str = DEFAULT_PRIMARY_LOCALE,
        secondary_locale: str = DEFAULT_SECONDARY_LOCALE,
        silence_timeout_seconds: float = SILENCE_TIMEOUT_SECONDS,
    ) -> None:
        self._backend = backend
        self._emit = emit
        self._secondary_locale = secondary_locale
        self._locale = primary_locale
        self._fallback_used = False
        self._timer = SilenceTimer(silence_timeout_seconds)

        self._attempt = 0
        self._listening = False
        self._finalized = False
        self._committed = ""
        self._interim = ""

    # ── Read-only state ───────────────────────────────────────────────────────

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def locale(self) -> str:
        return self._locale

    @property
    def fallback_used(self) -> bool:
        return self._fallback_used

    @property
    def transcript(self) -> str:
        return " ".join(part for part in (self._committed, self._interim) if part)

    # ── Controls ──────────────────────────────────────────────────────────────

    def start(self) -> bool:
        """Begin a new attempt. Returns False if it could not start."""
        if self._listening:
            log.debug("capture.start_ignored", reason="already listening")
            return False

        self._timer.cancel()
        self._attempt += 1
        self._committed = ""
        self._interim = ""
        self._finalized = False

        try:
            self._start_backend()
        except RecognizerStartError as e:
            log.warning("capture.start_failed", kind=str(e.kind), locale=self._locale, error=str(e))
            self._attempt += 1
            self._emit(CaptureFailed(CaptureErrorKind(e.kind), str(e)))
            return False
        except Exception as e:
            log.error("capture.start_error", error=str(e), error_type=type(e).__name__)
            self._attempt += 1
            self._emit(AdapterFault(source="capture", error=str(e)))
            return False

        self._listening = True
        log.info("capture.started", locale=self._locale, attempt=self._attempt)
        return True

    def stop(self) -> None:
        """Finalize immediately with the accumulated transcript."""
        if not self._listening:
            return
        self._timer.cancel()
        self._finalize()
        self._end_attempt()
        self._call_backend("stop")

    def abort(self) -> None:
        """Cancel the attempt. No finalized event."""
        if not self._listening:
            return
        self._timer.cancel()
        self._committed = ""
        self._interim = ""
        self._end_attempt()
        self._call_backend("abort")

    # ── Backend plumbing ──────────────────────────────────────────────────────

    def _start_backend(self) -> None:
        listener = _AttemptListener(self, self._attempt)
        try:
            self._backend.start(listener, self._locale)
        except RecognizerStartError as e:
            if e.kind == CaptureErrorKind.DEVICE_DENIED or not self._use_fallback():
                raise
            self._backend.start(listener, self._locale)

    def _use_fallback(self) -> bool:
        """Switch to the secondary locale once. False if already used."""
        if self._fallback_used or self._locale == self._secondary_locale:
            return False
        log.warning("capture.locale_fallback", old=self._locale, new=self._secondary_locale)
        self._fallback_used = True
        self._locale = self._secondary_locale
        return True

    def _call_backend(self, method: str) -> None:
        try:
            getattr(self._backend, method)()
        except Exception as e:
            log.error(f"capture.{method}_error", error=str(e), error_type=type(e).__name__)
            self._emit(AdapterFault(source="capture", error=str(e)))

    def _is_live(self, attempt: int) -> bool:
        return self._listening and attempt == self._attempt

    # ── Backend callbacks ─────────────────────────────────────────────────────

    def _on_result(self, text: str, is_final: bool) -> None:
        self._timer.cancel()
        segment = text.strip()
        if is_final:
            if segment:
                self._committed = f"{self._committed} {segment}".strip()
            self._interim = ""
        else:
            self._interim = segment
        self._emit(TranscriptUpdated(self.transcript))

    def _on_speech_start(self) -> None:
        self._timer.cancel()

    def _on_speech_pause(self) -> None:
        self._timer.arm(self._on_silence)

    def _on_silence(self) -> None:
        if not self._listening:
            return
        log.info("capture.silence_endpoint", length=len(self.transcript))
        self.stop()

    def _on_error(self, kind: CaptureErrorKind, message: str) -> None:
        self._timer.cancel()

        if kind == CaptureErrorKind.ABORTED and not self.transcript.strip():
            log.debug("capture.aborted_empty")
            self._end_attempt()
            return

        if kind == CaptureErrorKind.LANGUAGE_UNSUPPORTED and self._use_fallback():
            self._call_backend("abort")
            self._committed = ""
            self._interim = ""
            self._attempt += 1
            try:
                self._backend.start(_AttemptListener(self, self._attempt), self._locale)
                return
            except RecognizerStartError as e:
                kind, message = CaptureErrorKind(e.kind), str(e)
            except Exception as e:
                self._end_attempt()
                self._emit(AdapterFault(source="capture", error=str(e)))
                return

        log.warning("capture.failed", kind=kind.value, error=message)
        self._committed = ""
        self._interim = ""
        self._end_attempt()
        self._emit(CaptureFailed(kind, message))

    def _on_fault(self, error: str) -> None:
        self._timer.cancel()
        self._committed = ""
        self._interim = ""
        self._end_attempt()
        self._emit(AdapterFault(source="capture", error=error))

    def _on_end(self) -> None:
        self._timer.cancel()
        self._finalize()
        self._end_attempt()

    # ── Attempt bookkeeping ───────────────────────────────────────────────────

    def _finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        text = self.transcript.strip()
        if text:
            log.info("capture.finalized", length=len(text))
            self._emit(UtteranceFinalized(text))

    def _end_attempt(self) -> None:
        if not self._listening:
            return
        self._listening = False
        self._attempt += 1
        self._emit(CaptureEnded())

    def __repr__(self) -> str:
        return f"<SpeechCaptureAdapter locale={self._locale} listening={self._listening}>"
