"""
tests/unit/test_controller.py — Turn Controller Unit Tests

The controller is wired to real adapters, a real service client and a real
store in tmp_path; only the edges are fakes (chat backend, recognizer,
synthesizer). Adapter events are drained by hand so every transition is
observable.

Test groups
-----------
  Session start      — greeting, resume, ephemeral, missing credential
  Typed turns        — ordering, blank, wrong phase, failures, timeout
  Voice turns        — capture → finalize → exchange, blank, device errors
  Output             — playback end, mute, output errors
  Epoch              — stale results after reset are dropped
  Log + settings     — delete, theme, voice default, speech rate
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from luna.agent.controller import NO_CAPTURE_NOTICE, TurnController, to_chat_turns
from luna.agent.types import (
    ConversationPhase,
    Message,
    RetentionMode,
    Sender,
    SessionProfile,
    SymbolicIdentity,
)
from luna.brain.llm_errors import LLMConnectionError, LLMRateLimitError
from luna.brain.persona import BOOTSTRAP_MESSAGE
from luna.brain.service_client import APOLOGIES, ChatBackend, ConversationServiceClient
from luna.brain.types import FailureKind, TurnRole
from luna.exceptions import ConfigurationError, RecognizerStartError
from luna.storage.session_store import SessionStore
from luna.voice.capture import SpeechCaptureAdapter
from luna.voice.catalog import VoiceCatalog, VoiceOption
from luna.voice.events import AdapterFault, CaptureErrorKind, OutputErrorKind
from luna.voice.output import SpeechOutputAdapter

Phase = ConversationPhase


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────


class FakeChatBackend(ChatBackend):
    provider = "fake"

    def __init__(self, replies: list[Any] | None = None) -> None:
        self.replies = list(replies or [])
        self.default_reply = "I'm here with you."
        self.opened: list[tuple[str, list]] = []
        self.sent: list[str] = []
        self.gate: asyncio.Event | None = None

    def open_chat(self, persona_prompt, history):
        self.opened.append((persona_prompt, list(history)))
        return object()

    async def send_message(self, chat, text):
        self.sent.append(text)
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else self.default_reply
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeRecognizer:
    def __init__(self) -> None:
        self.listener = None
        self.refuse: CaptureErrorKind | None = None
        self.stops = 0
        self.aborts = 0

    def start(self, listener, locale):
        if self.refuse is not None:
            raise RecognizerStartError(self.refuse, "refused")
        self.listener = listener

    def stop(self):
        self.stops += 1

    def abort(self):
        self.aborts += 1


class FakeSynth:
    supported = True

    def __init__(self) -> None:
        self.spoken: list[tuple[str, Any]] = []
        self.listener = None
        self.cancels = 0

    def attach(self, catalog):
        catalog.publish([
            VoiceOption(voice_id="en_US-amy-medium", name="Amy", language="en-US"),
            VoiceOption(voice_id="en_IN-asha-female", name="Asha Female", language="en-IN"),
        ])

    def speak(self, text, voice_id, rate, pitch, volume, listener):
        self.spoken.append((text, voice_id))
        self.listener = listener

    def cancel(self):
        self.cancels += 1


class Rig:
    """A controller plus handles on every fake behind it."""

    def __init__(self, tmp_path, backend=None, with_capture=True, timeout_seconds=1.0,
                 silence_timeout_seconds=0.05, client_backend_missing=False):
        self.events: asyncio.Queue = asyncio.Queue()
        self.backend = backend or FakeChatBackend()
        self.client = ConversationServiceClient(
            None if client_backend_missing else self.backend,
            timeout_seconds=timeout_seconds,
        )
        self.store = SessionStore.from_directory(tmp_path)
        self.recognizer = FakeRecognizer()
        self.capture = (
            SpeechCaptureAdapter(self.recognizer, emit=self.events.put_nowait,
                                 silence_timeout_seconds=silence_timeout_seconds)
            if with_capture else None
        )
        self.synth = FakeSynth()
        self.catalog = VoiceCatalog(preferred_language="en-IN")
        self.output = SpeechOutputAdapter(self.synth, emit=self.events.put_nowait, catalog=self.catalog)
        self.controller = TurnController(
            client=self.client,
            store=self.store,
            events=self.events,
            capture=self.capture,
            output=self.output,
            catalog=self.catalog,
            mute_debounce_seconds=0,
        )
        self.synth.attach(self.catalog)

    async def drain(self) -> None:
        """Deliver queued adapter events, then let spawned exchanges finish."""
        while True:
            while not self.events.empty():
                self.controller.handle_event(self.events.get_nowait())
            await self.controller.wait_idle()
            if self.events.empty():
                return

    async def finish_playback(self) -> None:
        self.synth.listener.on_start()
        self.synth.listener.on_end()
        await self.drain()

    async def ready_session(self, retention=RetentionMode.PERSISTENT) -> None:
        await self.controller.begin_session(_profile(retention))
        await self.finish_playback()
        assert self.controller.phase == Phase.READY


def _profile(retention=RetentionMode.PERSISTENT, name="Moonbeam") -> SessionProfile:
    return SessionProfile(identity=SymbolicIdentity.from_name(name), retention_mode=retention)


def _senders(controller) -> list[Sender]:
    return [m.sender for m in controller.messages]


@pytest.fixture
def rig(tmp_path):
    return Rig(tmp_path)


# ─────────────────────────────────────────────────────────────────────────────
# Session start
# ─────────────────────────────────────────────────────────────────────────────


class TestSessionStart:
    @pytest.mark.asyncio
    async def test_fresh_session_bootstraps_greeting(self, rig):
        rig.backend.replies = ["Hello Moonbeam, how are you feeling?"]
        await rig.controller.begin_session(_profile())

        assert rig.backend.sent == [BOOTSTRAP_MESSAGE]
        assert [m.text for m in rig.controller.messages] == ["Hello Moonbeam, how are you feeling?"]
        assert _senders(rig.controller) == [Sender.AGENT]
        assert rig.controller.phase == Phase.PLAYING_AGENT

        await rig.finish_playback()
        assert rig.controller.phase == Phase.READY

    @pytest.mark.asyncio
    async def test_persona_carries_symbolic_name(self, rig):
        await rig.controller.begin_session(_profile(name="Stargazer"))
        persona, history = rig.backend.opened[0]
        assert "Stargazer" in persona
        assert "[SYMBOLIC_NAME_PLACEHOLDER]" not in persona
        assert history == []

    @pytest.mark.asyncio
    async def test_persistent_history_resumes_without_greeting(self, rig):
        profile = _profile()
        history = [Message.human("rough day"), Message.system("ignored"), Message.agent("tell me more")]
        rig.store.save_history(profile.identity.id, history)

        await rig.controller.begin_session(profile)

        assert rig.controller.phase == Phase.READY
        assert rig.backend.sent == []
        assert [m.id for m in rig.controller.messages] == [m.id for m in history]
        _, turns = rig.backend.opened[0]
        assert [(t.role, t.text) for t in turns] == [
            (TurnRole.HUMAN, "rough day"),
            (TurnRole.AGENT, "tell me more"),
        ]

    @pytest.mark.asyncio
    async def test_ephemeral_session_never_persists_history(self, rig):
        profile = _profile(RetentionMode.EPHEMERAL)
        rig.store.save_history(profile.identity.id, [Message.human("old")])

        await rig.controller.begin_session(profile)
        await rig.finish_playback()
        await rig.controller.submit_human_utterance("today")

        assert rig.backend.sent[0] == BOOTSTRAP_MESSAGE
        assert [m.text for m in rig.store.load_history(profile.identity.id)] == ["old"]
        assert rig.store.load_profile() == profile

    @pytest.mark.asyncio
    async def test_restore_session_uses_stored_profile(self, rig):
        assert await rig.controller.restore_session() is None
        assert rig.controller.phase == Phase.SETUP

        rig.store.save_profile(_profile(name="River"))
        restored = await rig.controller.restore_session()
        assert restored.identity.display_name == "River"
        assert rig.controller.profile == restored

    @pytest.mark.asyncio
    async def test_missing_credential_is_fatal(self, tmp_path):
        rig = Rig(tmp_path, client_backend_missing=True)
        with pytest.raises(ConfigurationError):
            await rig.controller.begin_session(_profile())
        assert rig.controller.phase == Phase.FAILED

    @pytest.mark.asyncio
    async def test_greeting_failure_surfaces_apology(self, rig):
        rig.backend.replies = [LLMConnectionError("network down", provider="fake")]
        await rig.controller.begin_session(_profile())

        assert rig.controller.phase == Phase.FAILED
        assert [m.text for m in rig.controller.messages] == [APOLOGIES[FailureKind.CONNECTIVITY]]


# ─────────────────────────────────────────────────────────────────────────────
# Typed turns
# ─────────────────────────────────────────────────────────────────────────────


class TestTypedTurns:
    @pytest.mark.asyncio
    async def test_successful_exchange_orders_human_then_agent(self, rig):
        await rig.ready_session()
        rig.backend.replies = ["That sounds tiring."]

        assert await rig.controller.submit_human_utterance("  Work was long.  ")

        new = rig.controller.messages[1:]
        assert [(m.sender, m.text) for m in new] == [
            (Sender.HUMAN, "Work was long."),
            (Sender.AGENT, "That sounds tiring."),
        ]
        assert rig.backend.sent[-1] == "Work was long."
        assert rig.controller.phase == Phase.PLAYING_AGENT

    @pytest.mark.asyncio
    async def test_whitespace_utterance_changes_nothing(self, rig):
        await rig.ready_session()
        before_messages = rig.controller.messages
        before_sent = list(rig.backend.sent)

        assert not await rig.controller.submit_human_utterance("   \n\t ")

        assert rig.controller.messages == before_messages
        assert rig.backend.sent == before_sent
        assert rig.controller.phase == Phase.READY

    @pytest.mark.asyncio
    async def test_submit_rejected_while_agent_speaking(self, rig):
        await rig.controller.begin_session(_profile())
        assert rig.controller.phase == Phase.PLAYING_AGENT
        assert not await rig.controller.submit_human_utterance("hello?")
        assert _senders(rig.controller) == [Sender.AGENT]

    @pytest.mark.asyncio
    async def test_quota_failure_then_recovery(self, rig):
        await rig.ready_session()
        rig.backend.replies = [LLMRateLimitError("429", provider="fake"), "Welcome back."]

        await rig.controller.submit_human_utterance("first try")
        assert rig.controller.phase == Phase.FAILED
        last = rig.controller.messages[-1]
        assert last.sender == Sender.SYSTEM
        assert last.text == "I'm experiencing high demand right now. Please try again in a few minutes."

        # FAILED unblocks on the next human attempt
        assert await rig.controller.submit_human_utterance("second try")
        assert rig.controller.messages[-1].text == "Welcome back."

    @pytest.mark.asyncio
    async def test_unresolved_exchange_times_out(self, tmp_path):
        rig = Rig(tmp_path, timeout_seconds=0.05)
        await rig.ready_session()
        rig.backend.gate = asyncio.Event()     # never set

        await rig.controller.submit_human_utterance("anyone there?")

        assert rig.controller.phase == Phase.FAILED
        assert rig.controller.messages[-1].text == APOLOGIES[FailureKind.TIMEOUT]
        assert rig.controller.health["error_count"] == 1

    @pytest.mark.asyncio
    async def test_oversized_input_gets_guidance_without_network(self, rig):
        await rig.ready_session()
        sent_before = len(rig.backend.sent)

        await rig.controller.submit_human_utterance("x" * 4001)

        assert len(rig.backend.sent) == sent_before
        assert rig.controller.messages[-1].sender == Sender.AGENT
        assert rig.controller.messages[-1].text.startswith("That's quite a lot to process")

    @pytest.mark.asyncio
    async def test_typed_submit_while_capturing_aborts_capture(self, rig):
        await rig.ready_session()
        assert rig.controller.start_capture()
        rig.recognizer.listener.on_result("half a thought", False)

        await rig.controller.submit_human_utterance("typed instead")
        await rig.drain()

        assert rig.recognizer.aborts == 1
        assert [m.text for m in rig.controller.messages if m.sender == Sender.HUMAN] == ["typed instead"]


# ─────────────────────────────────────────────────────────────────────────────
# Voice turns
# ─────────────────────────────────────────────────────────────────────────────


class TestVoiceTurns:
    @pytest.mark.asyncio
    async def test_spoken_turn_end_to_end(self, rig):
        await rig.ready_session()
        rig.backend.replies = ["Rest sounds important."]

        assert rig.controller.start_capture()
        assert rig.controller.phase == Phase.CAPTURING

        rig.recognizer.listener.on_result("I feel", False)
        await rig.drain()
        assert rig.controller.live_transcript == "I feel"

        rig.recognizer.listener.on_result("I feel tired", False)
        rig.recognizer.listener.on_speech_pause()
        await asyncio.sleep(0.15)
        await rig.drain()

        humans = [m.text for m in rig.controller.messages if m.sender == Sender.HUMAN]
        assert humans == ["I feel tired"]
        assert rig.controller.messages[-1].text == "Rest sounds important."
        assert rig.controller.phase == Phase.PLAYING_AGENT
        assert rig.controller.live_transcript == ""

    @pytest.mark.asyncio
    async def test_blank_capture_returns_to_ready(self, rig):
        await rig.ready_session()
        count = len(rig.controller.messages)
        rig.controller.start_capture()
        rig.controller.stop_capture()
        await rig.drain()

        assert rig.controller.phase == Phase.READY
        assert len(rig.controller.messages) == count

    @pytest.mark.asyncio
    async def test_cancel_capture_discards_utterance(self, rig):
        await rig.ready_session()
        count = len(rig.controller.messages)
        sent_before = len(rig.backend.sent)
        rig.controller.start_capture()
        rig.recognizer.listener.on_result("never mind", True)

        rig.controller.cancel_capture()
        await rig.drain()

        assert rig.recognizer.aborts == 1
        assert rig.recognizer.stops == 0
        assert rig.controller.phase == Phase.READY
        assert rig.controller.live_transcript == ""
        assert len(rig.controller.messages) == count
        assert len(rig.backend.sent) == sent_before

    @pytest.mark.asyncio
    async def test_device_error_sets_notice_only(self, rig):
        await rig.ready_session()
        count = len(rig.controller.messages)
        rig.controller.start_capture()
        rig.recognizer.listener.on_error(CaptureErrorKind.NO_SPEECH)
        await rig.drain()

        assert rig.controller.phase == Phase.READY
        assert rig.controller.notice.startswith("I didn't hear anything")
        assert len(rig.controller.messages) == count

    @pytest.mark.asyncio
    async def test_start_refused_keeps_ready(self, rig):
        await rig.ready_session()
        rig.recognizer.refuse = CaptureErrorKind.DEVICE_DENIED

        assert not rig.controller.start_capture()
        await rig.drain()

        assert rig.controller.phase == Phase.READY
        assert "Microphone access was denied" in rig.controller.notice

    @pytest.mark.asyncio
    async def test_no_capture_adapter_sets_notice(self, tmp_path):
        rig = Rig(tmp_path, with_capture=False)
        await rig.ready_session()
        assert not rig.controller.start_capture()
        assert rig.controller.notice == NO_CAPTURE_NOTICE
        assert not rig.controller.voice_input_available

    @pytest.mark.asyncio
    async def test_capture_fault_fails_turn(self, rig):
        await rig.ready_session()
        rig.controller.start_capture()
        rig.recognizer.listener.on_fault("stream died")
        await rig.drain()

        assert rig.controller.phase == Phase.FAILED
        assert rig.controller.messages[-1].text == APOLOGIES[FailureKind.UNKNOWN]

        # the next human attempt is allowed again
        assert rig.controller.start_capture()


# ─────────────────────────────────────────────────────────────────────────────
# Output
# ─────────────────────────────────────────────────────────────────────────────


class TestOutput:
    @pytest.mark.asyncio
    async def test_reply_spoken_with_default_voice(self, rig):
        await rig.controller.begin_session(_profile())
        assert rig.controller.voice_id == "en_IN-asha-female"
        assert rig.synth.spoken[0][1] == "en_IN-asha-female"

    @pytest.mark.asyncio
    async def test_toggle_mute_twice_does_not_resume(self, rig):
        await rig.controller.begin_session(_profile())
        assert rig.controller.phase == Phase.PLAYING_AGENT
        old_listener = rig.synth.listener

        assert rig.controller.toggle_mute() is True
        assert rig.synth.cancels == 1
        assert rig.controller.phase == Phase.READY

        assert rig.controller.toggle_mute() is False
        old_listener.on_end()
        await rig.drain()
        assert len(rig.synth.spoken) == 1
        assert not rig.output.speaking
        assert rig.controller.phase == Phase.READY

    @pytest.mark.asyncio
    async def test_muted_reply_is_text_only(self, rig):
        await rig.ready_session()
        rig.controller.toggle_mute()
        spoken = len(rig.synth.spoken)

        await rig.controller.submit_human_utterance("quietly")

        assert len(rig.synth.spoken) == spoken
        assert rig.controller.messages[-1].sender == Sender.AGENT
        assert rig.controller.phase == Phase.READY

    @pytest.mark.asyncio
    async def test_muted_reply_waits_for_debounce(self, tmp_path):
        rig = Rig(tmp_path)
        rig.controller._mute_debounce = 0.05
        await rig.ready_session()
        rig.controller.toggle_mute()

        task = asyncio.create_task(rig.controller.submit_human_utterance("slowly"))
        await asyncio.sleep(0.01)
        assert rig.controller.phase == Phase.AWAITING_AGENT
        await task
        assert rig.controller.phase == Phase.READY

    @pytest.mark.asyncio
    async def test_output_error_appends_text_only_message(self, rig):
        await rig.controller.begin_session(_profile())
        rig.synth.listener.on_error(OutputErrorKind.SYNTHESIS_FAILED)
        await rig.drain()

        assert rig.controller.phase == Phase.READY
        last = rig.controller.messages[-1]
        assert last.sender == Sender.SYSTEM
        assert last.text == "Speech synthesis failed. Please try again. Displaying text only."


# ─────────────────────────────────────────────────────────────────────────────
# Epoch
# ─────────────────────────────────────────────────────────────────────────────


class TestEpoch:
    @pytest.mark.asyncio
    async def test_result_after_reset_is_discarded(self, rig):
        await rig.ready_session()
        rig.backend.gate = asyncio.Event()
        rig.backend.replies = ["too late"]
        epoch = rig.controller.epoch

        task = asyncio.create_task(rig.controller.submit_human_utterance("still there?"))
        await asyncio.sleep(0)
        assert rig.controller.phase == Phase.AWAITING_AGENT

        rig.controller.reset_session()
        rig.backend.gate.set()
        await task

        assert rig.controller.epoch > epoch
        assert rig.controller.phase == Phase.SETUP
        assert rig.controller.messages == []
        assert rig.store.load_profile() is None

    @pytest.mark.asyncio
    async def test_reset_clears_persisted_history(self, rig):
        await rig.ready_session()
        identity_id = rig.controller.profile.identity.id
        assert rig.store.load_history(identity_id)

        rig.controller.reset_session()

        assert rig.store.load_history(identity_id) == []
        assert rig.controller.profile is None


# ─────────────────────────────────────────────────────────────────────────────
# Log + settings
# ─────────────────────────────────────────────────────────────────────────────


class TestLogAndSettings:
    @pytest.mark.asyncio
    async def test_delete_message_persists(self, rig):
        profile = _profile()
        a, b, c = Message.human("a"), Message.agent("b"), Message.human("c")
        rig.store.save_history(profile.identity.id, [a, b, c])
        await rig.controller.begin_session(profile)
        sent = list(rig.backend.sent)

        assert rig.controller.delete_message(b.id)

        assert [(m.sender, m.text) for m in rig.controller.messages] == [
            (Sender.HUMAN, "a"),
            (Sender.HUMAN, "c"),
        ]
        assert [m.id for m in rig.store.load_history(profile.identity.id)] == [a.id, c.id]
        assert rig.backend.sent == sent
        assert rig.synth.spoken == []

    @pytest.mark.asyncio
    async def test_delete_unknown_id_is_noop(self, rig):
        await rig.ready_session()
        count = len(rig.controller.messages)
        assert not rig.controller.delete_message("msg_missing")
        assert len(rig.controller.messages) == count

    def test_theme_is_persisted(self, tmp_path):
        rig = Rig(tmp_path)
        assert rig.controller.theme == "cosmic-night"
        assert rig.controller.set_theme("forest-whisper")
        assert not rig.controller.set_theme("neon")

        again = Rig(tmp_path)
        assert again.controller.theme == "forest-whisper"

    def test_speech_rate_is_clamped(self, rig):
        assert rig.controller.set_speech_rate(5) == 2.0
        assert rig.controller.set_speech_rate(0.1) == 0.5
        assert rig.controller.set_speech_rate(1.3) == 1.3

    def test_select_voice(self, rig):
        assert rig.controller.select_voice("en_US-amy-medium")
        assert rig.controller.voice_id == "en_US-amy-medium"
        assert not rig.controller.select_voice("nope")
        assert rig.controller.voice_id == "en_US-amy-medium"

    def test_vanished_voice_is_replaced(self, rig):
        rig.controller.select_voice("en_US-amy-medium")
        rig.catalog.publish([VoiceOption(voice_id="en_GB-alan", name="Alan", language="en-GB")])
        assert rig.controller.voice_id == "en_GB-alan"

    def test_to_chat_turns_drops_system_messages(self):
        turns = to_chat_turns([Message.human("h"), Message.system("s"), Message.agent("a")])
        assert [t.role for t in turns] == [TurnRole.HUMAN, TurnRole.AGENT]

    @pytest.mark.asyncio
    async def test_run_drains_queue(self, rig):
        await rig.controller.begin_session(_profile())
        runner = asyncio.create_task(rig.controller.run())
        rig.events.put_nowait(AdapterFault(source="output", error="device vanished"))
        await asyncio.sleep(0.01)
        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner
        assert rig.controller.phase == Phase.FAILED

    @pytest.mark.asyncio
    async def test_observers_notified(self, rig):
        calls = []
        rig.controller.add_observer(lambda: calls.append(rig.controller.phase))
        await rig.controller.begin_session(_profile())
        assert Phase.AWAITING_AGENT in calls
        assert calls[-1] == Phase.PLAYING_AGENT
