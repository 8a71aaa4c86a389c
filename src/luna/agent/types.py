"""
agent/types.py — Turn controller data model

Messages, the session profile and the conversation phase. The controller is
the only writer of any of these; everything else gets read-only copies.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Sender(str, Enum):
    HUMAN = "human"
    AGENT = "agent"
    SYSTEM = "system"


class RetentionMode(str, Enum):
    EPHEMERAL = "ephemeral"         # log lives only as long as the process
    PERSISTENT = "persistent"       # log re-written after every mutation


class ConversationPhase(str, Enum):
    SETUP = "setup"
    READY = "ready"
    CAPTURING = "capturing"
    SUBMITTING = "submitting"
    AWAITING_AGENT = "awaiting_agent"
    PLAYING_AGENT = "playing_agent"
    FAILED = "failed"


# ─────────────────────────────────────────────────────────────────────────────
# Catalogues
# ─────────────────────────────────────────────────────────────────────────────

SYMBOLIC_NAMES: list[str] = [
    "Moonbeam",
    "River",
    "Phoenix",
    "Stargazer",
    "Whisperwind",
    "Sunpetal",
    "Diya",
    "Asha",
    "Kiran",
    "Shanti",
    "Kamal",
    "Ambar",
]

DEFAULT_THEME = "cosmic-night"

# theme id → (display name, rich accent colour)
THEMES: dict[str, tuple[str, str]] = {
    "cosmic-night": ("Cosmic Night", "medium_purple"),
    "serene-dawn": ("Serene Dawn", "light_salmon1"),
    "forest-whisper": ("Forest Whisper", "sea_green3"),
}


# ─────────────────────────────────────────────────────────────────────────────
# Models
# ─────────────────────────────────────────────────────────────────────────────


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """One entry in the session log. Never edited; only deleted by id."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_message_id)
    sender: Sender
    text: str
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def human(cls, text: str) -> "Message":
        return cls(sender=Sender.HUMAN, text=text)

    @classmethod
    def agent(cls, text: str) -> "Message":
        return cls(sender=Sender.AGENT, text=text)

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(sender=Sender.SYSTEM, text=text)


class SymbolicIdentity(BaseModel):
    """Opaque id plus the symbolic name Luna uses to address the operator."""
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str

    @classmethod
    def from_name(cls, display_name: str) -> "SymbolicIdentity":
        """The same name always maps to the same id, so its history can be found again."""
        name = display_name.strip()
        return cls(id="-".join(name.lower().split()), display_name=name)


class SessionProfile(BaseModel):
    """Created once at setup; replaced wholesale on reset."""
    model_config = ConfigDict(frozen=True)

    identity: SymbolicIdentity
    retention_mode: RetentionMode = RetentionMode.PERSISTENT

    @property
    def persistent(self) -> bool:
        return self.retention_mode == RetentionMode.PERSISTENT
