"""
voice/synthesizers.py — Speech synthesizer backends

A synthesizer speaks one utterance at a time and reports its lifecycle to a
listener on the event loop. The output adapter is the only listener; it owns
the speaking flag and drops callbacks from cancelled utterances.

Backends:
    PiperSynthesizer  — piper-tts voices (*.onnx) discovered in a directory,
                        synthesis + sounddevice playback in executor threads
    NullSynthesizer   — no speech engine; the session runs text-only

Usage::

    synth = PiperSynthesizer("~/.local/share/piper")
    synth.attach(catalog)       # publishes the discovered voices
    adapter = SpeechOutputAdapter(synth, emit=queue.put_nowait, catalog=catalog)
"""

from __future__ import annotations

import asyncio
import io
import time
import wave
from pathlib import Path
from typing import Optional, Protocol

from luna.exceptions import OutputError
from luna.observability.logger import get_logger
from luna.voice.catalog import VoiceCatalog, VoiceOption
from luna.voice.events import OutputErrorKind

log = get_logger(__name__)

MAX_SPOKEN_CHARS = 5000


# ─────────────────────────────────────────────────────────────────────────────
# Contracts
# ─────────────────────────────────────────────────────────────────────────────


class SynthesisListener(Protocol):
    def on_start(self) -> None: ...
    def on_end(self) -> None: ...
    def on_error(self, kind: OutputErrorKind) -> None: ...


class SynthesizerBackend(Protocol):
    @property
    def supported(self) -> bool: ...

    def attach(self, catalog: VoiceCatalog) -> None: ...

    def speak(
        self,
        text: str,
        voice_id: Optional[str],
        rate: float,
        pitch: float,
        volume: float,
        listener: SynthesisListener,
    ) -> None: ...

    def cancel(self) -> None: ...


# ─────────────────────────────────────────────────────────────────────────────
# NullSynthesizer
# ─────────────────────────────────────────────────────────────────────────────


class NullSynthesizer:
    """Text-only mode. Publishes an empty catalogue and never speaks."""

    supported = False

    def attach(self, catalog: VoiceCatalog) -> None:
        catalog.publish([])

    def speak(self, text, voice_id, rate, pitch, volume, listener) -> None:
        log.debug("synth.null.speak_ignored", length=len(text))

    def cancel(self) -> None:
        pass


# ─────────────────────────────────────────────────────────────────────────────
# PiperSynthesizer
# ─────────────────────────────────────────────────────────────────────────────


def voice_from_model_path(path: Path) -> VoiceOption:
    """en_IN-priyamvada-medium.onnx → VoiceOption(language='en-IN', name='Priyamvada (medium)')."""
    stem = path.stem
    parts = stem.split("-")
    language = parts[0].replace("_", "-") if parts else "und"
    if len(parts) >= 3:
        name = f"{parts[1].replace('_', ' ').title()} ({parts[2]})"
    elif len(parts) == 2:
        name = parts[1].replace("_", " ").title()
    else:
        name = stem
    return VoiceOption(voice_id=stem, name=name, language=language)


class PiperSynthesizer:
    """
    Offline TTS with piper-tts.

    rate maps to Piper's length_scale (1 / rate), volume scales the sample
    amplitude. Piper has no pitch control; pitch is accepted and ignored.
    """

    def __init__(self, voices_dir: str | Path, max_chars: int = MAX_SPOKEN_CHARS) -> None:
        self.voices_dir = Path(voices_dir).expanduser()
        self.max_chars = max_chars
        self._voices: list[VoiceOption] = []
        self._loaded: dict[str, object] = {}    # voice_id → piper.PiperVoice
        self._catalog: Optional[VoiceCatalog] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def supported(self) -> bool:
        return bool(self._voices)

    # ── Voice discovery ───────────────────────────────────────────────────────

    def attach(self, catalog: VoiceCatalog) -> None:
        self._catalog = catalog
        self.refresh_voices()

    def refresh_voices(self) -> list[VoiceOption]:
        """Rescan the voices directory and republish the full list."""
        if self.voices_dir.is_dir():
            paths = sorted(self.voices_dir.glob("*.onnx"))
        else:
            log.warning("synth.piper.voices_dir_missing", path=str(self.voices_dir))
            paths = []
        self._voices = [voice_from_model_path(p) for p in paths]
        log.info("synth.piper.voices_found", count=len(self._voices))
        if self._catalog is not None:
            self._catalog.publish(self._voices)
        return list(self._voices)

    def _resolve_voice_id(self, voice_id: Optional[str]) -> Optional[str]:
        known = {v.voice_id for v in self._voices}
        if voice_id in known:
            return voice_id
        if self._catalog is not None:
            for v in self._catalog.voices:
                if v.voice_id in known:
                    return v.voice_id
        return self._voices[0].voice_id if self._voices else None

    # ── Speaking ──────────────────────────────────────────────────────────────

    def speak(
        self,
        text: str,
        voice_id: Optional[str],
        rate: float,
        pitch: float,
        volume: float,
        listener: SynthesisListener,
    ) -> None:
        loop = asyncio.get_running_loop()
        if len(text) > self.max_chars:
            loop.call_soon(listener.on_error, OutputErrorKind.TEXT_TOO_LONG)
            return
        resolved = self._resolve_voice_id(voice_id)
        if resolved is None:
            loop.call_soon(listener.on_error, OutputErrorKind.SYNTHESIS_UNAVAILABLE)
            return
        if pitch != 1.0:
            log.debug("synth.piper.pitch_ignored", pitch=pitch)
        self._task = loop.create_task(self._run(text, resolved, rate, volume, listener))

    def cancel(self) -> None:
        import sounddevice as sd

        if self._task is not None:
            self._task.cancel()
            self._task = None
        try:
            sd.stop()
        except Exception as e:
            log.debug("synth.piper.stop_failed", error=str(e))

    async def _run(
        self,
        text: str,
        voice_id: str,
        rate: float,
        volume: float,
        listener: SynthesisListener,
    ) -> None:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        try:
            voice = await loop.run_in_executor(None, self._load_voice, voice_id)
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.warning("synth.piper.voice_load_failed", voice_id=voice_id, error=str(e))
            listener.on_error(OutputErrorKind.VOICE_UNAVAILABLE)
            return

        try:
            audio, sample_rate = await loop.run_in_executor(None, self._run_piper, voice, text, rate)
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.warning("synth.piper.synthesis_failed", error=str(e))
            listener.on_error(OutputErrorKind.SYNTHESIS_FAILED)
            return

        log.debug("synth.piper.synthesized", duration_ms=round((time.monotonic() - t0) * 1000))
        listener.on_start()
        try:
            await loop.run_in_executor(None, self._play_audio, audio * volume, sample_rate)
        except asyncio.CancelledError:
            return
        except OutputError as e:
            log.warning("synth.piper.playback_blocked", error=str(e))
            listener.on_error(OutputErrorKind.NOT_ALLOWED)
            return
        except Exception as e:
            log.warning("synth.piper.playback_failed", error=str(e))
            listener.on_error(OutputErrorKind.UNKNOWN)
            return
        listener.on_end()

    def _load_voice(self, voice_id: str):
        """Blocking — runs in executor. Voices are loaded once and cached."""
        if voice_id not in self._loaded:
            from piper import PiperVoice
            model_path = self.voices_dir / f"{voice_id}.onnx"
            self._loaded[voice_id] = PiperVoice.load(str(model_path.resolve()))
        return self._loaded[voice_id]

    def _run_piper(self, voice, text: str, rate: float):
        """
        Blocking Piper synthesis — runs in executor.
        Returns (numpy_array, sample_rate).
        """
        import soundfile as sf
        from piper import SynthesisConfig

        buf = io.BytesIO()
        with wave.open(buf, "wb") as wav_file:
            voice.synthesize_wav(
                text,
                wav_file,
                syn_config=SynthesisConfig(length_scale=1.0 / max(rate, 0.1)),
            )

        buf.seek(0)
        data, sr = sf.read(buf, dtype="float32")
        return data, sr

    def _play_audio(self, audio, sample_rate: int) -> None:
        """
        Blocking sounddevice playback — runs in executor.
        Returns early when cancel() calls sd.stop().
        """
        import sounddevice as sd
        try:
            sd.play(audio, samplerate=sample_rate)
            sd.wait()
        except sd.PortAudioError as e:
            raise OutputError(f"audio device refused playback: {e}") from e

    def __repr__(self) -> str:
        return f"<PiperSynthesizer voices={len(self._voices)} dir={self.voices_dir}>"
