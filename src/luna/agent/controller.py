"""
agent/controller.py — Luna Turn Controller

The single authority over whose turn it is. Capture, the AI exchange and
speech output each finish on their own schedule; the controller turns their
results into one consistent ConversationPhase and one ordered message log.

Turn lifecycle:
    READY ─/listen─► CAPTURING ─finalized─► SUBMITTING ─► AWAITING_AGENT
      ▲                  │ blank / device error                 │
      │                  ▼                                      ├─ reply ──► PLAYING_AGENT ─end/mute─► READY
      └──────────────── READY                                   ├─ muted ──► READY (after debounce)
                                                                └─ failure ► FAILED ─next attempt─► ...

Adapters never call the controller. They push typed events onto the queue
that run() drains; handle_event() maps each one onto a transition. The
session epoch is bumped on every begin/reset, and any AI result that comes
back under an older epoch, or after the phase left AWAITING_AGENT, is
dropped.

The controller is the only writer of the log and of persisted history.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from luna.agent.types import (
    DEFAULT_THEME,
    THEMES,
    ConversationPhase,
    Message,
    Sender,
    SessionProfile,
)
from luna.brain.llm_errors import LLMError
from luna.brain.persona import BOOTSTRAP_MESSAGE, build_persona_prompt
from luna.brain.service_client import ConversationServiceClient, apology_for
from luna.brain.types import ChatHandle, ChatTurn, ExchangeResult, FailureKind, TurnRole
from luna.config.settings import MAX_SPEECH_RATE, MIN_SPEECH_RATE
from luna.exceptions import ConfigurationError, ExchangeInProgressError
from luna.observability.logger import bind_session, clear_session, get_logger
from luna.storage.session_store import SessionStore
from luna.voice.capture import SpeechCaptureAdapter
from luna.voice.catalog import VoiceCatalog, VoiceOption, choose_default_voice
from luna.voice.events import (
    AdapterEvent,
    AdapterFault,
    CaptureEnded,
    CaptureFailed,
    OutputEnded,
    OutputFailed,
    OutputStarted,
    TranscriptUpdated,
    UtteranceFinalized,
)
from luna.voice.output import SpeechOutputAdapter

log = get_logger(__name__)

DEFAULT_MUTE_DEBOUNCE_SECONDS = 0.5

_SUBMIT_PHASES = {ConversationPhase.READY, ConversationPhase.CAPTURING, ConversationPhase.FAILED}
_CAPTURE_PHASES = {ConversationPhase.READY, ConversationPhase.FAILED}

_STATUS_TEXT: dict[ConversationPhase, str] = {
    ConversationPhase.SETUP: "Setting up your session...",
    ConversationPhase.READY: "Luna is listening whenever you're ready.",
    ConversationPhase.CAPTURING: "Listening...",
    ConversationPhase.SUBMITTING: "Processing your thoughts...",
    ConversationPhase.AWAITING_AGENT: "Luna is thinking...",
    ConversationPhase.PLAYING_AGENT: "Luna is speaking...",
    ConversationPhase.FAILED: "Something went wrong. Try again when you're ready.",
}

NO_CAPTURE_NOTICE = "Voice input is not available. You can type your thoughts instead."


def to_chat_turns(messages: list[Message]) -> list[ChatTurn]:
    """Human and agent messages become prior-history turns; system messages never do."""
    turns: list[ChatTurn] = []
    for m in messages:
        if m.sender == Sender.HUMAN:
            turns.append(ChatTurn(role=TurnRole.HUMAN, text=m.text))
        elif m.sender == Sender.AGENT:
            turns.append(ChatTurn(role=TurnRole.AGENT, text=m.text))
    return turns


class TurnController:
    """
    Orchestrates one spoken journaling session.

    Usage::

        events: asyncio.Queue = asyncio.Queue()
        capture = SpeechCaptureAdapter(recognizer, emit=events.put_nowait)
        output = SpeechOutputAdapter(synth, emit=events.put_nowait, catalog=catalog)
        controller = TurnController(client, store, events, capture, output, catalog)

        runner = asyncio.create_task(controller.run())
        await controller.begin_session(profile)
        await controller.submit_human_utterance("Today was long.")
    """

    def __init__(
        self,
        client: ConversationServiceClient,
        store: SessionStore,
        events: Optional[asyncio.Queue] = None,
        capture: Optional[SpeechCaptureAdapter] = None,
        output: Optional[SpeechOutputAdapter] = None,
        catalog: Optional[VoiceCatalog] = None,
        speech_rate: float = 1.0,
        speech_pitch: float = 1.0,
        speech_volume: float = 1.0,
        mute_debounce_seconds: float = DEFAULT_MUTE_DEBOUNCE_SECONDS,
    ) -> None:
        self._client = client
        self._store = store
        self.events: asyncio.Queue = events if events is not None else asyncio.Queue()
        self._capture = capture
        self._output = output
        self._catalog = catalog

        self._phase = ConversationPhase.SETUP
        self._epoch = 0
        self._profile: Optional[SessionProfile] = None
        self._handle: Optional[ChatHandle] = None
        self._messages: list[Message] = []
        self._muted = False
        self._notice: Optional[str] = None
        self._live_transcript = ""

        self._voice_id: Optional[str] = None
        self._rate = speech_rate
        self._pitch = speech_pitch
        self._volume = speech_volume
        self._mute_debounce = mute_debounce_seconds
        self._theme = store.load_theme_preference() or DEFAULT_THEME

        self._tasks: set[asyncio.Task] = set()
        self._observers: list[Callable[[], None]] = []

        if catalog is not None:
            catalog.subscribe(self._on_voices_published)

    # ── Read-only state ───────────────────────────────────────────────────────

    @property
    def phase(self) -> ConversationPhase:
        return self._phase

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def profile(self) -> Optional[SessionProfile]:
        return self._profile

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def notice(self) -> Optional[str]:
        return self._notice

    @property
    def live_transcript(self) -> str:
        return self._live_transcript

    @property
    def voice_id(self) -> Optional[str]:
        return self._voice_id

    @property
    def speech_rate(self) -> float:
        return self._rate

    @property
    def theme(self) -> str:
        return self._theme

    @property
    def status_text(self) -> str:
        return _STATUS_TEXT[self._phase]

    @property
    def voice_input_available(self) -> bool:
        return self._capture is not None

    @property
    def voices(self) -> list[VoiceOption]:
        return self._catalog.voices if self._catalog is not None else []

    @property
    def health(self) -> dict:
        snapshot = self._client.metrics.snapshot()
        snapshot["healthy"] = self._client.is_healthy()
        return snapshot

    def add_observer(self, callback: Callable[[], None]) -> None:
        """``callback`` runs after every visible state change."""
        self._observers.append(callback)

    # ── Session lifecycle ─────────────────────────────────────────────────────

    async def begin_session(self, profile: SessionProfile) -> None:
        """
        Start (or resume) a session for ``profile``.

        PERSISTENT with stored history: the log is restored and the chat is
        rehydrated with it, no greeting. Otherwise the log starts empty and
        the bootstrap message elicits Luna's opening line; the bootstrap text
        itself never enters the log.

        Raises ConfigurationError (after moving to FAILED) when no usable
        credential exists.
        """
        self._epoch += 1
        epoch = self._epoch
        self._profile = profile
        self._handle = None
        self._notice = None
        self._live_transcript = ""
        bind_session(profile.identity.id, profile.identity.display_name)
        self._store.save_profile(profile)
        self._set_phase(ConversationPhase.SETUP)

        persona = build_persona_prompt(profile.identity.display_name)
        history = self._store.load_history(profile.identity.id) if profile.persistent else []

        if history:
            self._messages = history
            log.info("controller.session_resumed", messages=len(history))
            if self._open_chat(persona, to_chat_turns(history)):
                self._set_phase(ConversationPhase.READY)
            return

        self._messages = []
        self._persist()
        log.info("controller.session_started", retention=profile.retention_mode.value)
        if not self._open_chat(persona, []):
            return

        self._set_phase(ConversationPhase.AWAITING_AGENT)
        result = await self._client.send(self._handle, BOOTSTRAP_MESSAGE)
        if not self._is_current(epoch):
            log.info("controller.result_discarded", reason="stale greeting")
            return
        await self._deliver(result, epoch)

    async def restore_session(self) -> Optional[SessionProfile]:
        """Resume the stored profile, if any. Returns it, or None (stay in SETUP)."""
        profile = self._store.load_profile()
        if profile is None:
            return None
        await self.begin_session(profile)
        return profile

    def reset_session(self) -> None:
        """Forget everything about the current identity and return to SETUP."""
        if self._capture is not None:
            self._capture.abort()
        if self._output is not None:
            self._output.cancel()
        if self._profile is not None:
            self._store.clear_history(self._profile.identity.id)
            self._store.clear_profile()
        log.info("controller.session_reset")
        self._profile = None
        self._handle = None
        self._messages = []
        self._notice = None
        self._live_transcript = ""
        self._epoch += 1
        clear_session()
        self._set_phase(ConversationPhase.SETUP)

    def _open_chat(self, persona: str, turns: list[ChatTurn]) -> bool:
        try:
            self._handle = self._client.create(persona, turns)
            return True
        except ConfigurationError:
            log.error("controller.missing_credential")
            self._set_phase(ConversationPhase.FAILED)
            raise
        except LLMError as e:
            log.error("controller.chat_open_failed", error=str(e))
            self._append(Message.system(apology_for(FailureKind.UNKNOWN)))
            self._set_phase(ConversationPhase.FAILED)
            return False

    # ── Human turn ────────────────────────────────────────────────────────────

    async def submit_human_utterance(self, text: str) -> bool:
        """
        Submit typed or finalized text. Returns False if it was not accepted
        (blank text, wrong phase, no session).
        """
        if not self._accept_utterance(text):
            return False
        await self._exchange(text.strip(), self._epoch)
        return True

    def _accept_utterance(self, text: str) -> bool:
        if not text or not text.strip():
            log.debug("controller.submit_blank")
            return False
        if self._phase not in _SUBMIT_PHASES:
            log.warning("controller.submit_rejected", phase=self._phase.value)
            return False
        if self._handle is None:
            log.warning("controller.submit_rejected", reason="no chat session")
            return False

        if self._capture is not None and self._capture.listening:
            self._capture.abort()
        self._notice = None
        self._live_transcript = ""
        self._append(Message.human(text.strip()))
        self._set_phase(ConversationPhase.SUBMITTING)
        return True

    async def _exchange(self, text: str, epoch: int) -> None:
        self._set_phase(ConversationPhase.AWAITING_AGENT)
        try:
            result = await self._client.send(self._handle, text)
        except ExchangeInProgressError as e:
            log.error("controller.exchange_busy", error=str(e))
            result = ExchangeResult.failure(FailureKind.UNKNOWN)

        if not self._is_current(epoch):
            log.info("controller.result_discarded", epoch=epoch, current_epoch=self._epoch,
                     phase=self._phase.value)
            return
        await self._deliver(result, epoch)

    async def _deliver(self, result: ExchangeResult, epoch: int) -> None:
        if not result.ok:
            self._append(Message.system(apology_for(result.failure_kind)))
            self._set_phase(ConversationPhase.FAILED)
            return

        self._append(Message.agent(result.text))
        if self._start_output(result.text):
            return

        # Muted or no speech engine: give the reply a moment on screen.
        if self._mute_debounce > 0:
            await asyncio.sleep(self._mute_debounce)
        if self._is_current(epoch):
            self._set_phase(ConversationPhase.READY)

    def _start_output(self, text: str) -> bool:
        if self._muted or self._output is None or not self._output.supported:
            return False
        self._set_phase(ConversationPhase.PLAYING_AGENT)
        started = self._output.speak(
            text,
            voice_id=self._voice_id,
            rate=self._rate,
            pitch=self._pitch,
            volume=self._volume,
        )
        if not started:
            self._set_phase(ConversationPhase.AWAITING_AGENT)
        return started

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._epoch and self._phase == ConversationPhase.AWAITING_AGENT

    # ── Capture controls ──────────────────────────────────────────────────────

    def start_capture(self) -> bool:
        if self._capture is None:
            self._notice = NO_CAPTURE_NOTICE
            self._notify()
            return False
        if self._phase not in _CAPTURE_PHASES or self._handle is None:
            log.warning("controller.capture_rejected", phase=self._phase.value)
            return False
        self._notice = None
        self._live_transcript = ""
        if not self._capture.start():
            return False
        self._set_phase(ConversationPhase.CAPTURING)
        return True

    def stop_capture(self) -> None:
        if self._capture is not None and self._phase == ConversationPhase.CAPTURING:
            self._capture.stop()

    def cancel_capture(self) -> None:
        """Abandon the in-flight utterance without submitting it."""
        if self._capture is None or self._phase != ConversationPhase.CAPTURING:
            return
        self._capture.abort()
        self._live_transcript = ""
        self._set_phase(ConversationPhase.READY)

    # ── Log mutation ──────────────────────────────────────────────────────────

    def delete_message(self, message_id: str) -> bool:
        for i, m in enumerate(self._messages):
            if m.id == message_id:
                del self._messages[i]
                self._persist()
                log.info("controller.message_deleted", sender=m.sender.value)
                self._notify()
                return True
        log.info("controller.delete_unknown", message_id=message_id)
        return False

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        self._persist()
        self._notify()

    def _persist(self) -> None:
        if self._profile is not None and self._profile.persistent:
            self._store.save_history(self._profile.identity.id, self._messages)

    # ── Output controls ───────────────────────────────────────────────────────

    def toggle_mute(self) -> bool:
        """Flip mute. Muting while Luna speaks cancels playback for good."""
        self._muted = not self._muted
        log.info("controller.mute", muted=self._muted)
        if self._muted and self._output is not None and self._output.speaking:
            self._output.cancel()
        if self._muted and self._phase == ConversationPhase.PLAYING_AGENT:
            self._set_phase(ConversationPhase.READY)
        self._notify()
        return self._muted

    def select_voice(self, voice_id: str) -> bool:
        if self._catalog is None or self._catalog.get(voice_id) is None:
            log.info("controller.voice_unknown", voice_id=voice_id)
            return False
        self._voice_id = voice_id
        log.info("controller.voice_selected", voice_id=voice_id)
        self._notify()
        return True

    def set_speech_rate(self, rate: float) -> float:
        self._rate = min(MAX_SPEECH_RATE, max(MIN_SPEECH_RATE, float(rate)))
        self._notify()
        return self._rate

    def set_theme(self, theme_id: str) -> bool:
        if theme_id not in THEMES:
            return False
        self._theme = theme_id
        self._store.save_theme_preference(theme_id)
        self._notify()
        return True

    def _on_voices_published(self, voices: list[VoiceOption]) -> None:
        if self._voice_id is not None and any(v.voice_id == self._voice_id for v in voices):
            return
        default = choose_default_voice(voices, self._catalog.preferred_language)
        self._voice_id = default.voice_id if default else None
        log.info("controller.voice_default", voice_id=self._voice_id, available=len(voices))

    # ── Event drain ───────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Drain adapter events until cancelled."""
        while True:
            event = await self.events.get()
            try:
                self.handle_event(event)
            except Exception as e:
                log.error("controller.event_error", event_type=type(event).__name__, error=str(e),
                          error_type=type(e).__name__)
                self._append(Message.system(apology_for(FailureKind.UNKNOWN)))
                self._set_phase(ConversationPhase.FAILED)

    def handle_event(self, event: AdapterEvent) -> None:
        if isinstance(event, TranscriptUpdated):
            if self._phase == ConversationPhase.CAPTURING:
                self._live_transcript = event.text
                self._notify()

        elif isinstance(event, UtteranceFinalized):
            if self._phase != ConversationPhase.CAPTURING:
                log.debug("controller.finalized_ignored", phase=self._phase.value)
                return
            if self._accept_utterance(event.text):
                self._spawn(self._exchange(event.text.strip(), self._epoch))

        elif isinstance(event, CaptureFailed):
            log.warning("controller.capture_failed", kind=event.kind.value)
            self._live_transcript = ""
            self._notice = event.notice
            if self._phase == ConversationPhase.CAPTURING:
                self._set_phase(ConversationPhase.READY)
            else:
                self._notify()

        elif isinstance(event, CaptureEnded):
            self._live_transcript = ""
            if self._phase == ConversationPhase.CAPTURING:
                self._set_phase(ConversationPhase.READY)

        elif isinstance(event, OutputStarted):
            log.debug("controller.output_started")

        elif isinstance(event, OutputEnded):
            if self._phase == ConversationPhase.PLAYING_AGENT:
                self._set_phase(ConversationPhase.READY)

        elif isinstance(event, OutputFailed):
            self._append(Message.system(f"{event.reason} Displaying text only."))
            if self._phase == ConversationPhase.PLAYING_AGENT:
                self._set_phase(ConversationPhase.READY)

        elif isinstance(event, AdapterFault):
            log.error("controller.adapter_fault", source=event.source, error=event.error)
            if event.source == "output" and self._output is not None:
                self._output.cancel()
            self._live_transcript = ""
            self._append(Message.system(apology_for(FailureKind.UNKNOWN)))
            self._set_phase(ConversationPhase.FAILED)

    async def wait_idle(self) -> None:
        """Wait for exchanges started from events. Used by tests and shutdown."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── Phase bookkeeping ─────────────────────────────────────────────────────

    def _set_phase(self, phase: ConversationPhase) -> None:
        if phase != self._phase:
            log.info("controller.phase", old=self._phase.value, new=phase.value)
            self._phase = phase
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._observers):
            try:
                callback()
            except Exception as e:
                log.error("controller.observer_failed", error=str(e))

    def __repr__(self) -> str:
        return f"<TurnController phase={self._phase.value} messages={len(self._messages)}>"
