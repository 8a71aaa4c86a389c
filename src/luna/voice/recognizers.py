"""
voice/recognizers.py — Speech recognizer backends

A recognizer turns microphone audio into incremental transcript results and
reports them to a listener. The capture adapter is the only listener; it owns
endpointing, the transcript and the locale fallback.

Pipeline (WhisperRecognizer):
    sounddevice InputStream (audio thread)
        → call_soon_threadsafe → asyncio.Queue of 30 ms int16 frames
        → webrtcvad speech / silence decision per frame
        → faster-whisper transcription of the current segment (executor)
        → listener.on_result(text, is_final) on the event loop

While the speaker keeps talking the segment is re-transcribed every
``interim_interval_ms`` and reported as an interim result. After
``pause_duration_ms`` of silence the segment is transcribed once more,
reported as final, and followed by ``on_speech_pause()``.

Models are loaded once (see ``preload``), never per attempt.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Protocol

from luna.exceptions import RecognizerStartError
from luna.observability.logger import get_logger
from luna.voice.events import CaptureErrorKind

log = get_logger(__name__)

# ── Audio constants ───────────────────────────────────────────────────────────

_FRAME_DURATION_MS = 30        # VAD frame size: must be 10, 20, or 30 ms
_DTYPE = "int16"
_SPEECH_ONSET_FRAMES = 2       # consecutive speech frames before a segment opens
_NO_SPEECH_TIMEOUT_S = 8.0


# ─────────────────────────────────────────────────────────────────────────────
# Contracts
# ─────────────────────────────────────────────────────────────────────────────


class RecognizerListener(Protocol):
    """Callbacks a recognizer delivers on the event loop."""

    def on_result(self, text: str, is_final: bool) -> None: ...
    def on_speech_start(self) -> None: ...
    def on_speech_pause(self) -> None: ...
    def on_error(self, kind: CaptureErrorKind, message: str = "") -> None: ...
    def on_fault(self, error: str) -> None: ...
    def on_end(self) -> None: ...


class RecognizerBackend(Protocol):
    """
    Start raises RecognizerStartError(kind) when recognition cannot begin in
    ``locale``. stop() ends recognition and reports on_end(); abort() ends it
    silently.
    """

    def start(self, listener: RecognizerListener, locale: str) -> None: ...
    def stop(self) -> None: ...
    def abort(self) -> None: ...


def whisper_language(locale: str) -> str:
    """BCP-47 locale → Whisper language code (hi-IN → hi)."""
    return locale.split("-")[0].split("_")[0].lower()


# ─────────────────────────────────────────────────────────────────────────────
# WhisperRecognizer
# ─────────────────────────────────────────────────────────────────────────────


class WhisperRecognizer:
    """
    Offline recognizer: sounddevice + webrtcvad + faster-whisper.

    Usage::

        recognizer = WhisperRecognizer(model_name="small")
        await recognizer.preload()
        adapter = SpeechCaptureAdapter(recognizer, emit=queue.put_nowait)
    """

    def __init__(
        self,
        model_name: str = "small",
        device: str = "cpu",
        sample_rate: int = 16000,
        vad_aggressiveness: int = 2,
        pause_duration_ms: int = 600,
        interim_interval_ms: int = 1000,
        mic_device_index: Optional[int] = None,
    ) -> None:
        self.model_name = model_name
        self.device = device
        self.sample_rate = sample_rate
        self.vad_aggressiveness = vad_aggressiveness
        self.pause_duration_ms = pause_duration_ms
        self.interim_interval_ms = interim_interval_ms
        self.mic_device_index = mic_device_index

        self._model = None      # faster_whisper.WhisperModel
        self._vad = None        # webrtcvad.Vad
        self._stream = None     # sounddevice.InputStream
        self._task: Optional[asyncio.Task] = None
        self._listener: Optional[RecognizerListener] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._frames: asyncio.Queue = asyncio.Queue(maxsize=1024)

    @property
    def frame_size(self) -> int:
        """Number of PCM samples per VAD frame."""
        return int(self.sample_rate * _FRAME_DURATION_MS / 1000)

    @property
    def pause_frames(self) -> int:
        return max(1, self.pause_duration_ms // _FRAME_DURATION_MS)

    @property
    def loaded(self) -> bool:
        return self._model is not None

    # ── Model loading ─────────────────────────────────────────────────────────

    async def preload(self) -> None:
        """Load Whisper and the VAD once, off the event loop."""
        loop = asyncio.get_running_loop()
        log.info("recognizer.loading_whisper", model=self.model_name)
        t0 = time.monotonic()
        self._model = await loop.run_in_executor(None, self._load_whisper)
        log.info(
            "recognizer.whisper_loaded",
            model=self.model_name,
            duration_ms=round((time.monotonic() - t0) * 1000),
        )

        import webrtcvad
        self._vad = webrtcvad.Vad(self.vad_aggressiveness)

    def _load_whisper(self):
        """Blocking — runs in executor."""
        from faster_whisper import WhisperModel
        return WhisperModel(self.model_name, device=self.device, compute_type="int8")

    # ── RecognizerBackend ─────────────────────────────────────────────────────

    def start(self, listener: RecognizerListener, locale: str) -> None:
        import sounddevice as sd

        if self._model is None:
            raise RecognizerStartError(CaptureErrorKind.DEVICE_UNAVAILABLE, "speech model not loaded")

        language = whisper_language(locale)
        supported = getattr(self._model, "supported_languages", None)
        if supported is not None and language not in supported:
            raise RecognizerStartError(
                CaptureErrorKind.LANGUAGE_UNSUPPORTED,
                f"Whisper model {self.model_name} does not support {locale}",
            )

        self._teardown()
        self._loop = asyncio.get_running_loop()
        self._listener = listener
        self._frames = asyncio.Queue(maxsize=1024)

        def _sd_callback(indata, frames, time_info, status):
            if status:
                log.debug("recognizer.sounddevice_status", status=str(status))
            if self._loop and not self._frames.full():
                # Copy bytes to avoid sharing mutable buffer with sounddevice
                self._loop.call_soon_threadsafe(self._frames.put_nowait, bytes(indata))

        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype=_DTYPE,
                blocksize=self.frame_size,
                device=self.mic_device_index,
                callback=_sd_callback,
            )
            self._stream.start()
        except PermissionError as e:
            self._stream = None
            raise RecognizerStartError(CaptureErrorKind.DEVICE_DENIED, str(e)) from e
        except sd.PortAudioError as e:
            self._stream = None
            raise RecognizerStartError(CaptureErrorKind.DEVICE_UNAVAILABLE, str(e)) from e

        self._task = self._loop.create_task(self._segment_loop(listener, language))
        log.info("recognizer.started", locale=locale, language=language)

    def stop(self) -> None:
        listener = self._listener
        self._teardown()
        if listener is not None and self._loop is not None:
            self._loop.call_soon(listener.on_end)
        log.info("recognizer.stopped")

    def abort(self) -> None:
        self._teardown()
        log.info("recognizer.aborted")

    # ── Internals ─────────────────────────────────────────────────────────────

    def _teardown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                log.debug("recognizer.stream_close_failed", error=str(e))
            self._stream = None
        self._listener = None

    async def _segment_loop(self, listener: RecognizerListener, language: str) -> None:
        """
        Segment state machine:
            WAITING  — listening for speech to begin
            SPEAKING — accumulating speech frames, interim results on a cadence
        """
        speaking = False
        heard_anything = False
        onset: list[bytes] = []
        segment: list[bytes] = []
        silence_count = 0
        started_at = time.monotonic()
        last_interim = 0.0

        try:
            while True:
                try:
                    frame = await asyncio.wait_for(self._frames.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    frame = None

                if frame is None:
                    if not heard_anything and time.monotonic() - started_at > _NO_SPEECH_TIMEOUT_S:
                        listener.on_error(CaptureErrorKind.NO_SPEECH)
                        return
                    continue

                is_speech = self._is_speech(frame)

                if not speaking:
                    if is_speech:
                        onset.append(frame)
                        if len(onset) >= _SPEECH_ONSET_FRAMES:
                            speaking = True
                            heard_anything = True
                            segment = list(onset)
                            onset = []
                            silence_count = 0
                            last_interim = time.monotonic()
                            listener.on_speech_start()
                    else:
                        onset = []
                        if not heard_anything and time.monotonic() - started_at > _NO_SPEECH_TIMEOUT_S:
                            listener.on_error(CaptureErrorKind.NO_SPEECH)
                            return
                    continue

                segment.append(frame)
                if is_speech:
                    silence_count = 0
                else:
                    silence_count += 1

                if silence_count >= self.pause_frames:
                    text = await self._transcribe(b"".join(segment), language)
                    if text:
                        listener.on_result(text, True)
                    listener.on_speech_pause()
                    speaking = False
                    segment = []
                    continue

                if (time.monotonic() - last_interim) * 1000 >= self.interim_interval_ms:
                    last_interim = time.monotonic()
                    text = await self._transcribe(b"".join(segment), language)
                    if text:
                        listener.on_result(text, False)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.error("recognizer.loop_error", error=str(e), error_type=type(e).__name__)
            listener.on_fault(str(e))

    def _is_speech(self, frame: bytes) -> bool:
        if self._vad is None:
            return False
        try:
            return self._vad.is_speech(frame, self.sample_rate)
        except Exception as e:
            log.debug("recognizer.vad_frame_rejected", error=str(e))
            return False

    async def _transcribe(self, pcm: bytes, language: str) -> str:
        """Runs faster-whisper in an executor thread so it never blocks the loop."""
        loop = asyncio.get_running_loop()
        text = await loop.run_in_executor(None, self._run_whisper, pcm, language)
        return text.strip()

    def _run_whisper(self, pcm: bytes, language: str) -> str:
        """Blocking Whisper transcription — runs in executor."""
        import numpy as np

        audio_f32 = np.frombuffer(pcm, dtype=np.int16).astype(np.float32) / 32768.0
        segments, _info = self._model.transcribe(
            audio_f32,
            language=language,
            beam_size=1,
            vad_filter=False,
        )
        return " ".join(seg.text.strip() for seg in segments).strip()

    def __repr__(self) -> str:
        return f"<WhisperRecognizer model={self.model_name} loaded={self.loaded}>"
