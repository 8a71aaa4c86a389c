"""
voice/events.py — Typed adapter events

The closed set of events the capture and output adapters push onto the turn
controller's queue. Adapters never raise past their boundary; everything they
have to say arrives here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class CaptureErrorKind(str, Enum):
    NO_SPEECH = "no-speech"
    DEVICE_DENIED = "device-denied"
    DEVICE_UNAVAILABLE = "device-unavailable"
    LANGUAGE_UNSUPPORTED = "language-unsupported"
    ABORTED = "aborted"


class OutputErrorKind(str, Enum):
    NOT_ALLOWED = "not-allowed"
    SYNTHESIS_UNAVAILABLE = "synthesis-unavailable"
    SYNTHESIS_FAILED = "synthesis-failed"
    VOICE_UNAVAILABLE = "voice-unavailable"
    TEXT_TOO_LONG = "text-too-long"
    UNKNOWN = "unknown"


CAPTURE_NOTICES: dict[CaptureErrorKind, str] = {
    CaptureErrorKind.NO_SPEECH: "I didn't hear anything. Try speaking, or type your thoughts instead.",
    CaptureErrorKind.DEVICE_DENIED: "Microphone access was denied. Please enable it in your system settings.",
    CaptureErrorKind.DEVICE_UNAVAILABLE: "I couldn't access your microphone. Please check your audio input device.",
    CaptureErrorKind.LANGUAGE_UNSUPPORTED: (
        "Hindi speech input may not be fully supported here. You can try speaking in English."
    ),
    CaptureErrorKind.ABORTED: "Voice input was interrupted. Please try again.",
}

OUTPUT_REASONS: dict[OutputErrorKind, str] = {
    OutputErrorKind.NOT_ALLOWED: "Speech output was not allowed by the audio device.",
    OutputErrorKind.SYNTHESIS_UNAVAILABLE: "Speech synthesis is not available on your system.",
    OutputErrorKind.SYNTHESIS_FAILED: "Speech synthesis failed. Please try again.",
    OutputErrorKind.VOICE_UNAVAILABLE: "The selected voice for speech output is not available.",
    OutputErrorKind.TEXT_TOO_LONG: "The text to speak is too long for the speech synthesis engine.",
    OutputErrorKind.UNKNOWN: "An unknown speech synthesis error occurred.",
}


# ─────────────────────────────────────────────────────────────────────────────
# Capture events
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TranscriptUpdated:
    text: str


@dataclass(frozen=True)
class UtteranceFinalized:
    """Trimmed, non-empty transcript of one capture attempt."""
    text: str


@dataclass(frozen=True)
class CaptureFailed:
    kind: CaptureErrorKind
    message: str = ""

    @property
    def notice(self) -> str:
        return CAPTURE_NOTICES[self.kind]


@dataclass(frozen=True)
class CaptureEnded:
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Output events
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OutputStarted:
    pass


@dataclass(frozen=True)
class OutputEnded:
    pass


@dataclass(frozen=True)
class OutputFailed:
    kind: OutputErrorKind
    reason: str = ""

    @classmethod
    def of(cls, kind: OutputErrorKind) -> "OutputFailed":
        return cls(kind=kind, reason=OUTPUT_REASONS[kind])


# ─────────────────────────────────────────────────────────────────────────────
# Faults
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AdapterFault:
    """An adapter hit an exception it has no typed event for."""
    source: str
    error: str


AdapterEvent = Union[
    TranscriptUpdated,
    UtteranceFinalized,
    CaptureFailed,
    CaptureEnded,
    OutputStarted,
    OutputEnded,
    OutputFailed,
    AdapterFault,
]
