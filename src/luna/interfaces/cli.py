"""
interfaces/cli.py — Luna Operator Console

Interactive terminal front end for the turn controller.
Uses rich for terminal rendering and aioconsole for async input.

Features:
  - Profile setup: pick a symbolic name, choose whether the journal is kept
  - Plain text is submitted as a typed utterance
  - /listen and /stop drive speech capture; transcripts render live
  - /mute, /voices, /voice, /rate, /theme mirror the settings drawer
  - /history, /delete, /forget manage the journal itself
  - Graceful Ctrl+C / Ctrl+D handling

Usage:
    python -m luna
    python -m luna --text-only --log-level DEBUG
"""

from __future__ import annotations

import asyncio
import sys
from typing import Optional

import aioconsole
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from luna.agent.controller import TurnController
from luna.agent.types import (
    SYMBOLIC_NAMES,
    THEMES,
    ConversationPhase,
    Message,
    RetentionMode,
    Sender,
    SessionProfile,
    SymbolicIdentity,
)
from luna.brain import ConversationClientFactory
from luna.config.settings import Settings
from luna.exceptions import ConfigurationError
from luna.observability.logger import get_logger
from luna.storage.session_store import SessionStore
from luna.voice.capture import SpeechCaptureAdapter
from luna.voice.catalog import VoiceCatalog
from luna.voice.output import SpeechOutputAdapter
from luna.voice.recognizers import WhisperRecognizer
from luna.voice.synthesizers import NullSynthesizer, PiperSynthesizer

log = get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

_MAX_NAME_LENGTH = 30

_HELP_TEXT = """
## Luna Commands

| Command | Description |
|---------|-------------|
| *(just type)* | Share a thought with Luna |
| `/listen` | Start speaking; Luna sends it after a short pause |
| `/stop` | Stop listening and send what was heard |
| `/mute` | Mute or unmute Luna's voice |
| `/history` | Show this journal with message ids |
| `/delete <id>` | Delete one message (id or its first characters) |
| `/voices` | List available voices |
| `/voice <id>` | Choose Luna's voice |
| `/rate <0.5-2.0>` | Set speaking rate |
| `/theme [id]` | Show or change the colour theme |
| `/forget` | Erase this journal and start over |
| `/status` | Show session status |
| `/help` | Show this help message |
| `exit` / `quit` / Ctrl+D | Leave Luna |

Luna is an AI companion and not a replacement for professional therapy.
If you are in distress, please seek help from a qualified professional.
"""

_SENDER_STYLE = {
    Sender.HUMAN: "bold white",
    Sender.SYSTEM: "yellow",
}


def _short_id(message: Message) -> str:
    return message.id.removeprefix("msg_")[:8]


# ── Console ───────────────────────────────────────────────────────────────────


class LunaConsole:
    """
    Terminal session for Luna.

    Wires together: Settings → service client → store → adapters → controller
    then runs a rich-powered async input loop while a background task drains
    adapter events.
    """

    def __init__(self, settings: Settings, text_only: bool = False, console: Optional[Console] = None):
        self.settings = settings
        self.text_only = text_only
        self.console = console or Console()
        self.controller: Optional[TurnController] = None
        self._runner: Optional[asyncio.Task] = None
        self._shutdown = asyncio.Event()

        # render bookkeeping
        self._shown_ids: set[str] = set()
        self._last_notice: Optional[str] = None
        self._last_transcript = ""

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initialize all components, set up the profile, then run the REPL loop."""
        await self._init_components()
        self._runner = asyncio.create_task(self.controller.run())
        try:
            await self._open_session()
            self._print_banner()
            await self._repl_loop()
        finally:
            await self._cleanup()

    async def _init_components(self) -> None:
        """Wire up the service client, store, adapters and controller."""
        self.console.print("[dim]Preparing Luna...[/]")
        events: asyncio.Queue = asyncio.Queue()

        client = ConversationClientFactory.from_settings(self.settings)
        store = SessionStore.from_directory(self.settings.data_dir)
        catalog = VoiceCatalog(preferred_language=self.settings.speech.preferred_language)

        if self.text_only or not self.settings.speech.enabled:
            synth = NullSynthesizer()
        else:
            synth = PiperSynthesizer(self.settings.speech.voices_dir)
        output = SpeechOutputAdapter(synth, emit=events.put_nowait, catalog=catalog)

        capture = None
        if not self.text_only and self.settings.capture.enabled:
            capture = await self._init_capture(events)

        speech = self.settings.speech
        self.controller = TurnController(
            client=client,
            store=store,
            events=events,
            capture=capture,
            output=output,
            catalog=catalog,
            speech_rate=speech.rate,
            speech_pitch=speech.pitch,
            speech_volume=speech.volume,
            mute_debounce_seconds=speech.mute_debounce_seconds,
        )
        self.controller.add_observer(self._render_updates)
        synth.attach(catalog)
        log.info("cli.initialized", voice_input=capture is not None, voice_output=output.supported)

    async def _init_capture(self, events: asyncio.Queue) -> Optional[SpeechCaptureAdapter]:
        cfg = self.settings.capture
        recognizer = WhisperRecognizer(
            model_name=cfg.whisper_model,
            device=cfg.whisper_device,
            sample_rate=cfg.sample_rate,
            vad_aggressiveness=cfg.vad_aggressiveness,
            pause_duration_ms=cfg.pause_duration_ms,
            interim_interval_ms=cfg.interim_interval_ms,
            mic_device_index=cfg.mic_device_index,
        )
        try:
            with self.console.status("[dim]Loading speech recognition model...[/]"):
                await recognizer.preload()
        except Exception as e:
            log.warning("cli.capture_unavailable", error=str(e), error_type=type(e).__name__)
            self.console.print(f"[yellow]⚠ Voice input unavailable ({e}). You can still type.[/]")
            return None
        return SpeechCaptureAdapter(
            recognizer,
            emit=events.put_nowait,
            primary_locale=cfg.primary_locale,
            secondary_locale=cfg.secondary_locale,
            silence_timeout_seconds=cfg.silence_timeout_seconds,
        )

    async def _open_session(self) -> None:
        with self.console.status("[dim]Luna is preparing...[/]"):
            profile = await self.controller.restore_session()
        if profile is not None:
            self.console.print(f"[dim]Welcome back, {profile.identity.display_name}.[/]")
            return
        profile = await self._setup_profile()
        with self.console.status("[dim]Luna is preparing...[/]"):
            await self.controller.begin_session(profile)

    async def _setup_profile(self) -> SessionProfile:
        """Ask for a symbolic name and a retention mode."""
        accent = self._accent
        table = Table(title="Choose a name for Luna to call you", box=box.SIMPLE, title_style=accent)
        table.add_column("#", style="dim", justify="right")
        table.add_column("Name")
        for i, name in enumerate(SYMBOLIC_NAMES, 1):
            table.add_row(str(i), name)
        self.console.print(table)
        self.console.print("[dim]Pick a number, or type a name of your own. Please don't use your real name.[/]")

        name = ""
        while not name:
            raw = (await aioconsole.ainput("Name> ")).strip()
            if raw.isdigit() and 1 <= int(raw) <= len(SYMBOLIC_NAMES):
                name = SYMBOLIC_NAMES[int(raw) - 1]
            elif 0 < len(raw) <= _MAX_NAME_LENGTH:
                name = raw
            else:
                self.console.print(f"[yellow]Please choose 1-{len(SYMBOLIC_NAMES)} or a name up to {_MAX_NAME_LENGTH} characters.[/]")

        keep = (await aioconsole.ainput("Keep this journal between sessions? [Y/n] ")).strip().lower()
        retention = RetentionMode.EPHEMERAL if keep in ("n", "no") else RetentionMode.PERSISTENT
        log.info("cli.profile_created", retention=retention.value)
        return SessionProfile(identity=SymbolicIdentity.from_name(name), retention_mode=retention)

    # ── Banner & Help ─────────────────────────────────────────────────────────

    @property
    def _accent(self) -> str:
        theme = self.controller.theme if self.controller else "cosmic-night"
        return THEMES.get(theme, THEMES["cosmic-night"])[1]

    def _print_banner(self) -> None:
        profile = self.controller.profile
        name = profile.identity.display_name if profile else "friend"
        retention = "kept on this device" if profile and profile.persistent else "not saved"
        voice_in = "on" if self.controller.voice_input_available else "off"
        self.console.print(
            Panel(
                f"[bold]Luna[/]  ·  your journaling companion\n\n"
                f"Hello, [bold {self._accent}]{name}[/]. This journal is {retention}. "
                f"Voice input: {voice_in}.\n"
                f"Type your thoughts, [bold]/listen[/] to speak, or [bold]/help[/] for commands. "
                f"[bold]exit[/] or Ctrl+D to leave.",
                border_style=self._accent,
                padding=(0, 2),
            )
        )

    def _print_help(self) -> None:
        self.console.print(Markdown(_HELP_TEXT))

    # ── REPL Loop ─────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        """Main async input loop."""
        while not self._shutdown.is_set():
            try:
                user_input = await aioconsole.ainput(self._build_prompt())
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Take care. Goodbye.[/]")
                break

            user_input = user_input.strip()
            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit"):
                self.console.print("[dim]Take care. Goodbye.[/]")
                break

            await self._dispatch(user_input)

    def _build_prompt(self) -> str:
        profile = self.controller.profile
        name = profile.identity.display_name if profile else "you"
        muted = "[muted]" if self.controller.muted else ""
        return f"\033[35m{name}{muted}\033[0m> "

    # ── Command Dispatch ──────────────────────────────────────────────────────

    async def _dispatch(self, raw: str) -> None:
        """Route input to the correct handler."""
        if raw.startswith("/"):
            parts = raw.split(maxsplit=1)
            cmd = parts[0].lower()
            arg = parts[1].strip() if len(parts) > 1 else ""

            handlers = {
                "/help":    lambda _: self._print_help(),
                "/listen":  lambda _: self._cmd_listen(),
                "/stop":    lambda _: self._cmd_stop(),
                "/mute":    lambda _: self._cmd_mute(),
                "/history": lambda _: self._cmd_history(),
                "/delete":  self._cmd_delete,
                "/voices":  lambda _: self._cmd_voices(),
                "/voice":   self._cmd_voice,
                "/rate":    self._cmd_rate,
                "/theme":   self._cmd_theme,
                "/forget":  lambda _: self._cmd_forget(),
                "/status":  lambda _: self._cmd_status(),
            }

            handler = handlers.get(cmd)
            if handler:
                result = handler(arg)
                if asyncio.iscoroutine(result):
                    await result
            else:
                self.console.print(
                    f"[yellow]Unknown command: {cmd}. Type /help for commands.[/]"
                )
        else:
            await self._cmd_share(raw)

    # ── Commands ──────────────────────────────────────────────────────────────

    async def _cmd_share(self, text: str) -> None:
        accepted = await self.controller.submit_human_utterance(text)
        if not accepted:
            self.console.print(f"[dim]{self.controller.status_text}[/]")

    def _cmd_listen(self) -> None:
        if self.controller.start_capture():
            self.console.print("[dim]Listening... speak now. Luna will respond after a short pause, or use /stop.[/]")
        elif self.controller.notice is None:
            self.console.print(f"[dim]{self.controller.status_text}[/]")

    def _cmd_stop(self) -> None:
        if self.controller.phase != ConversationPhase.CAPTURING:
            self.console.print("[dim]Not listening right now.[/]")
            return
        self.controller.stop_capture()

    def _cmd_mute(self) -> None:
        muted = self.controller.toggle_mute()
        self.console.print("[dim]Luna's voice is muted.[/]" if muted else "[dim]Luna's voice is on.[/]")

    def _cmd_history(self) -> None:
        messages = self.controller.messages
        if not messages:
            self.console.print("[dim]Your journal is empty.[/]")
            return
        table = Table(box=box.SIMPLE_HEAD, show_lines=False)
        table.add_column("id", style="dim")
        table.add_column("when", style="dim")
        table.add_column("who")
        table.add_column("text", overflow="fold")
        for m in messages:
            who = "Luna" if m.sender == Sender.AGENT else m.sender.value
            table.add_row(_short_id(m), m.created_at.astimezone().strftime("%d %b %H:%M"), who, m.text)
        self.console.print(table)

    def _cmd_delete(self, arg: str) -> None:
        if not arg:
            self.console.print("[yellow]Usage: /delete <id>[/]")
            return
        prefix = arg.removeprefix("msg_")
        matches = [m for m in self.controller.messages if m.id == arg or _short_id(m).startswith(prefix)]
        if len(matches) != 1:
            self.console.print(
                "[yellow]No message with that id.[/]" if not matches
                else "[yellow]That id matches several messages; use more characters.[/]"
            )
            return
        self.controller.delete_message(matches[0].id)
        self._shown_ids.discard(matches[0].id)
        self.console.print("[dim]Deleted.[/]")

    def _cmd_voices(self) -> None:
        voices = self.controller.voices
        if not voices:
            self.console.print("[dim]No voices available. Luna will reply in text only.[/]")
            return
        table = Table(box=box.SIMPLE_HEAD)
        table.add_column("id")
        table.add_column("name")
        table.add_column("language", style="dim")
        for v in voices:
            marker = " ✓" if v.voice_id == self.controller.voice_id else ""
            table.add_row(f"{v.voice_id}{marker}", v.name, v.language)
        self.console.print(table)

    def _cmd_voice(self, arg: str) -> None:
        if self.controller.select_voice(arg):
            self.console.print(f"[dim]Voice set to {arg}.[/]")
        else:
            self.console.print("[yellow]Unknown voice. See /voices.[/]")

    def _cmd_rate(self, arg: str) -> None:
        try:
            rate = float(arg)
        except ValueError:
            self.console.print(f"[yellow]Usage: /rate <0.5-2.0> (now {self.controller.speech_rate:.1f})[/]")
            return
        applied = self.controller.set_speech_rate(rate)
        self.console.print(f"[dim]Speaking rate {applied:.1f}x.[/]")

    def _cmd_theme(self, arg: str) -> None:
        if not arg:
            for theme_id, (name, colour) in THEMES.items():
                marker = " ✓" if theme_id == self.controller.theme else ""
                self.console.print(f"  [{colour}]{theme_id}[/]  {name}{marker}")
            return
        if self.controller.set_theme(arg):
            self.console.print(f"[{self._accent}]Theme set to {THEMES[arg][0]}.[/]")
        else:
            self.console.print("[yellow]Unknown theme. Type /theme to list them.[/]")

    async def _cmd_forget(self) -> None:
        answer = (await aioconsole.ainput("Erase this journal and start over? [y/N] ")).strip().lower()
        if answer not in ("y", "yes"):
            self.console.print("[dim]Nothing was erased.[/]")
            return
        self.controller.reset_session()
        self._shown_ids.clear()
        self.console.print("[dim]Your journal has been erased.[/]")
        profile = await self._setup_profile()
        with self.console.status("[dim]Luna is preparing...[/]"):
            await self.controller.begin_session(profile)

    def _cmd_status(self) -> None:
        c = self.controller
        profile = c.profile
        health = c.health
        text = (
            f"**Status:** {c.status_text}\n\n"
            f"| | |\n|---|---|\n"
            f"| Phase | `{c.phase.value}` |\n"
            f"| Name | {profile.identity.display_name if profile else '-'} |\n"
            f"| Retention | {profile.retention_mode.value if profile else '-'} |\n"
            f"| Messages | {len(c.messages)} |\n"
            f"| Muted | {'yes' if c.muted else 'no'} |\n"
            f"| Voice | {c.voice_id or 'text only'} |\n"
            f"| Rate | {c.speech_rate:.1f}x |\n"
            f"| Theme | {c.theme} |\n"
            f"| Service | {'healthy' if health['healthy'] else 'degraded'} "
            f"({health['request_count']} requests, {health['error_count']} errors, "
            f"avg {health['average_response_ms']} ms) |\n"
        )
        self.console.print(Markdown(text))

    # ── Rendering ─────────────────────────────────────────────────────────────

    def _render_updates(self) -> None:
        """Observer: print whatever changed since the last call."""
        c = self.controller

        for m in c.messages:
            if m.id in self._shown_ids:
                continue
            self._shown_ids.add(m.id)
            self._render_message(m)

        transcript = c.live_transcript
        if transcript and transcript != self._last_transcript:
            self.console.print(f'  [dim italic]"{transcript}"[/]')
        self._last_transcript = transcript

        notice = c.notice
        if notice and notice != self._last_notice:
            self.console.print(f"[yellow]⚠ {notice}[/]")
        self._last_notice = notice

    def _render_message(self, message: Message) -> None:
        text = message.text.strip()
        if not text:
            return
        if message.sender == Sender.AGENT:
            self.console.print(
                Panel(
                    Markdown(text),
                    title=f"[{self._accent}]Luna[/]",
                    title_align="left",
                    border_style=self._accent,
                    padding=(0, 2),
                )
            )
        else:
            self.console.print(f"[{_SENDER_STYLE[message.sender]}]{text}[/]")

    # ── Cleanup ───────────────────────────────────────────────────────────────

    async def _cleanup(self) -> None:
        if self.controller is not None:
            self.controller.cancel_capture()
            await self.controller.wait_idle()
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        log.info("cli.shutdown")


# ── Public entry point ────────────────────────────────────────────────────────


async def run_cli(settings: Settings, log, text_only: bool = False) -> None:
    """
    Entry point called from main.py.

    Args:
        settings:  Loaded Luna settings.
        log:       Application-level logger.
        text_only: Skip microphone and speech output entirely.
    """
    cli = LunaConsole(settings=settings, text_only=text_only)

    log.info("cli.starting", text_only=text_only)
    try:
        await cli.start()
    except ConfigurationError as e:
        log.error("cli.fatal_configuration", error=str(e))
        cli.console.print(
            Panel(
                f"{e}\n\nAdd GEMINI_API_KEY to your .env file and restart Luna.",
                title="[bold red]Luna can't start[/]",
                border_style="red",
                padding=(1, 2),
            )
        )
        sys.exit(1)
    except KeyboardInterrupt:
        log.info("cli.interrupted")
    finally:
        log.info("cli.stopped")
