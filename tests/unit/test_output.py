"""
tests/unit/test_output.py — Speech Output + Voice Catalogue Unit Tests

No audio device and no Piper models: synthesis is driven through a scripted
backend, and PiperSynthesizer is only exercised up to voice discovery and
its synchronous guards (plus a mocked executor path).

Test groups
-----------
  VoiceCatalog         — publish replaces wholesale, subscribers, sorting
  choose_default_voice — five-step preference order
  SpeechOutputAdapter  — single utterance, tokens, cancel emits nothing
  PiperSynthesizer     — voice discovery, guards, mocked synthesis path
  NullSynthesizer      — text-only mode
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from luna.voice.catalog import VoiceCatalog, VoiceOption, choose_default_voice, sort_voices
from luna.voice.events import (
    OUTPUT_REASONS,
    OutputEnded,
    OutputErrorKind,
    OutputFailed,
    OutputStarted,
)
from luna.voice.output import SpeechOutputAdapter
from luna.voice.synthesizers import NullSynthesizer, PiperSynthesizer, voice_from_model_path


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _voice(voice_id: str, name: str, language: str) -> VoiceOption:
    return VoiceOption(voice_id=voice_id, name=name, language=language)


class ScriptedSynth:
    """SynthesizerBackend that records speak() calls; the test plays the engine."""

    supported = True

    def __init__(self) -> None:
        self.spoken: list[tuple] = []
        self.listeners: list = []
        self.cancels = 0
        self.raise_on_speak: Exception | None = None

    @property
    def listener(self):
        return self.listeners[-1]

    def attach(self, catalog) -> None:
        catalog.publish([_voice("en_IN-asha-medium", "Asha Female", "en-IN")])

    def speak(self, text, voice_id, rate, pitch, volume, listener) -> None:
        if self.raise_on_speak is not None:
            raise self.raise_on_speak
        self.spoken.append((text, voice_id, rate, pitch, volume))
        self.listeners.append(listener)

    def cancel(self) -> None:
        self.cancels += 1


def _output(synth=None):
    events: list = []
    synth = synth or ScriptedSynth()
    catalog = VoiceCatalog()
    synth.attach(catalog)
    return SpeechOutputAdapter(synth, emit=events.append, catalog=catalog), synth, events


# ─────────────────────────────────────────────────────────────────────────────
# VoiceCatalog
# ─────────────────────────────────────────────────────────────────────────────


class TestVoiceCatalog:
    def test_latest_publish_replaces_list(self):
        catalog = VoiceCatalog()
        catalog.publish([_voice("a", "A", "en-US")])
        catalog.publish([_voice("b", "B", "hi-IN")])
        assert [v.voice_id for v in catalog.voices] == ["b"]
        assert catalog.get("a") is None
        assert catalog.publish_count == 2

    def test_every_subscriber_gets_every_publish(self):
        catalog = VoiceCatalog()
        seen_1, seen_2 = [], []
        catalog.subscribe(lambda vs: seen_1.append(len(vs)))
        catalog.subscribe(lambda vs: seen_2.append(len(vs)))
        catalog.publish([_voice("a", "A", "en-US")])
        catalog.publish([])
        assert seen_1 == seen_2 == [1, 0]

    def test_late_subscriber_receives_current_list(self):
        catalog = VoiceCatalog()
        catalog.publish([_voice("a", "A", "en-US")])
        seen = []
        catalog.subscribe(lambda vs: seen.append([v.voice_id for v in vs]))
        assert seen == [["a"]]

    def test_unsubscribe_stops_delivery(self):
        catalog = VoiceCatalog()
        seen = []
        unsubscribe = catalog.subscribe(seen.append)
        unsubscribe()
        catalog.publish([_voice("a", "A", "en-US")])
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self):
        catalog = VoiceCatalog()
        seen = []

        def broken(_voices):
            raise RuntimeError("boom")

        catalog.subscribe(broken)
        catalog.subscribe(seen.append)
        catalog.publish([_voice("a", "A", "en-US")])
        assert len(seen) == 1

    def test_sort_preferred_then_english_then_rest(self):
        voices = [
            _voice("de", "Thorsten", "de-DE"),
            _voice("us", "Amy", "en-US"),
            _voice("in", "Priyamvada", "en-IN"),
        ]
        assert [v.voice_id for v in sort_voices(voices, "en-IN")] == ["in", "us", "de"]


class TestChooseDefaultVoice:
    def test_preferred_language_female_first(self):
        voices = [
            _voice("in-m", "Arjun Male", "en-IN"),
            _voice("in-f", "Asha Female", "en-IN"),
            _voice("us-f", "Amy Female", "en-US"),
        ]
        assert choose_default_voice(voices, "en-IN").voice_id == "in-f"

    def test_any_preferred_language_voice(self):
        voices = [_voice("us-f", "Amy Female", "en-US"), _voice("in-m", "Arjun", "en-IN")]
        assert choose_default_voice(voices, "en-IN").voice_id == "in-m"

    def test_english_female(self):
        voices = [_voice("gb", "Alan", "en-GB"), _voice("us-f", "Amy Female", "en-US")]
        assert choose_default_voice(voices, "en-IN").voice_id == "us-f"

    def test_first_english(self):
        voices = [_voice("de", "Thorsten", "de-DE"), _voice("gb", "Alan", "en-GB")]
        assert choose_default_voice(voices, "en-IN").voice_id == "gb"

    def test_first_voice(self):
        voices = [_voice("de", "Thorsten", "de-DE"), _voice("fr", "Siwis", "fr-FR")]
        assert choose_default_voice(voices, "en-IN").voice_id == "de"

    def test_empty(self):
        assert choose_default_voice([], "en-IN") is None


# ─────────────────────────────────────────────────────────────────────────────
# SpeechOutputAdapter
# ─────────────────────────────────────────────────────────────────────────────


class TestSpeechOutputAdapter:
    def test_lifecycle_events(self):
        adapter, synth, events = _output()
        assert adapter.speak("Hello Moonbeam", voice_id="en_IN-asha-medium", rate=1.2)
        assert adapter.speaking

        synth.listener.on_start()
        synth.listener.on_end()

        assert events == [OutputStarted(), OutputEnded()]
        assert not adapter.speaking
        assert synth.spoken[0] == ("Hello Moonbeam", "en_IN-asha-medium", 1.2, 1.0, 1.0)

    def test_speak_while_speaking_is_noop(self):
        adapter, synth, _ = _output()
        assert adapter.speak("first")
        assert not adapter.speak("second")
        assert [s[0] for s in synth.spoken] == ["first"]

    def test_cancel_emits_nothing_and_drops_late_callbacks(self):
        adapter, synth, events = _output()
        adapter.speak("a long reflection")
        old = synth.listener
        adapter.cancel()

        old.on_end()
        old.on_error(OutputErrorKind.SYNTHESIS_FAILED)

        assert events == []
        assert synth.cancels == 1
        assert not adapter.speaking

    def test_unknown_voice_falls_back_to_default(self):
        adapter, synth, _ = _output()
        adapter.speak("hi", voice_id="gone-voice")
        assert synth.spoken[0][1] is None

    def test_error_maps_to_reason(self):
        adapter, synth, events = _output()
        adapter.speak("hi")
        synth.listener.on_error(OutputErrorKind.NOT_ALLOWED)
        assert events == [OutputFailed(OutputErrorKind.NOT_ALLOWED, OUTPUT_REASONS[OutputErrorKind.NOT_ALLOWED])]
        assert not adapter.speaking

    def test_backend_exception_becomes_unknown_failure(self):
        synth = ScriptedSynth()
        synth.raise_on_speak = RuntimeError("engine gone")
        adapter, _, events = _output(synth)
        assert not adapter.speak("hi")
        assert events == [OutputFailed.of(OutputErrorKind.UNKNOWN)]
        assert events[0].reason == "An unknown speech synthesis error occurred."

    def test_blank_text_is_not_spoken(self):
        adapter, synth, _ = _output()
        assert not adapter.speak("   ")
        assert synth.spoken == []

    def test_unsupported_backend(self):
        adapter, _, events = _output(NullSynthesizer())
        assert not adapter.supported
        assert not adapter.speak("hi")
        assert events == []


# ─────────────────────────────────────────────────────────────────────────────
# PiperSynthesizer
# ─────────────────────────────────────────────────────────────────────────────


class TestPiperSynthesizer:
    def test_voice_from_model_path(self, tmp_path):
        v = voice_from_model_path(tmp_path / "en_IN-priyamvada-medium.onnx")
        assert v.voice_id == "en_IN-priyamvada-medium"
        assert v.language == "en-IN"
        assert v.name == "Priyamvada (medium)"

    def test_discovery_publishes_catalog(self, tmp_path):
        (tmp_path / "en_US-amy-medium.onnx").write_bytes(b"")
        (tmp_path / "en_IN-priyamvada-medium.onnx").write_bytes(b"")
        (tmp_path / "notes.txt").write_text("ignored")

        catalog = VoiceCatalog(preferred_language="en-IN")
        synth = PiperSynthesizer(tmp_path)
        synth.attach(catalog)

        assert synth.supported
        assert [v.voice_id for v in catalog.voices] == ["en_IN-priyamvada-medium", "en_US-amy-medium"]

    def test_missing_directory_is_unsupported(self, tmp_path):
        catalog = VoiceCatalog()
        synth = PiperSynthesizer(tmp_path / "nope")
        synth.attach(catalog)
        assert not synth.supported
        assert catalog.voices == []
        assert catalog.publish_count == 1

    @pytest.mark.asyncio
    async def test_text_too_long_reported_async(self, tmp_path):
        (tmp_path / "en_US-amy-medium.onnx").write_bytes(b"")
        synth = PiperSynthesizer(tmp_path, max_chars=10)
        synth.attach(VoiceCatalog())
        listener = MagicMock()

        synth.speak("x" * 11, None, 1.0, 1.0, 1.0, listener)
        listener.on_error.assert_not_called()
        await asyncio.sleep(0)
        listener.on_error.assert_called_once_with(OutputErrorKind.TEXT_TOO_LONG)

    @pytest.mark.asyncio
    async def test_voice_load_failure_is_voice_unavailable(self, tmp_path):
        (tmp_path / "en_US-amy-medium.onnx").write_bytes(b"")
        synth = PiperSynthesizer(tmp_path)
        synth.attach(VoiceCatalog())
        listener = MagicMock()

        with patch.object(synth, "_load_voice", side_effect=OSError("corrupt model")):
            synth.speak("hello", None, 1.0, 1.0, 1.0, listener)
            await synth._task

        listener.on_error.assert_called_once_with(OutputErrorKind.VOICE_UNAVAILABLE)
        listener.on_start.assert_not_called()

    @pytest.mark.asyncio
    async def test_successful_playback_scales_volume(self, tmp_path):
        (tmp_path / "en_US-amy-medium.onnx").write_bytes(b"")
        synth = PiperSynthesizer(tmp_path)
        synth.attach(VoiceCatalog())
        listener = MagicMock()
        audio = np.ones(4, dtype=np.float32)

        with patch.object(synth, "_load_voice", return_value=object()), \
             patch.object(synth, "_run_piper", return_value=(audio, 22050)) as run_piper, \
             patch.object(synth, "_play_audio") as play:
            synth.speak("hello", "en_US-amy-medium", 1.25, 1.0, 0.5, listener)
            await synth._task

        assert run_piper.call_args.args[1:] == ("hello", 1.25)
        played, sample_rate = play.call_args.args
        assert sample_rate == 22050
        assert np.allclose(played, 0.5)
        listener.on_start.assert_called_once()
        listener.on_end.assert_called_once()

    @pytest.mark.asyncio
    async def test_synthesis_failure(self, tmp_path):
        (tmp_path / "en_US-amy-medium.onnx").write_bytes(b"")
        synth = PiperSynthesizer(tmp_path)
        synth.attach(VoiceCatalog())
        listener = MagicMock()

        with patch.object(synth, "_load_voice", return_value=object()), \
             patch.object(synth, "_run_piper", side_effect=RuntimeError("onnx")):
            synth.speak("hello", None, 1.0, 1.0, 1.0, listener)
            await synth._task

        listener.on_error.assert_called_once_with(OutputErrorKind.SYNTHESIS_FAILED)


class TestNullSynthesizer:
    def test_publishes_empty_catalog(self):
        catalog = VoiceCatalog()
        NullSynthesizer().attach(catalog)
        assert catalog.voices == []
        assert catalog.publish_count == 1
