"""
brain/types.py — Luna Conversation Service Data Models

Types shared between the conversation service client, its chat backends and
the turn controller. Backends map their native request/response shapes onto
these.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class TurnRole(str, Enum):
    HUMAN = "human"
    AGENT = "agent"


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    QUOTA = "quota"                 # quota exhausted / rate limited
    CONNECTIVITY = "connectivity"
    UNKNOWN = "unknown"


# ─────────────────────────────────────────────────────────────────────────────
# History + results
# ─────────────────────────────────────────────────────────────────────────────


class ChatTurn(BaseModel):
    """One role-tagged turn of prior exchange handed to a new chat session."""
    model_config = ConfigDict(frozen=True)

    role: TurnRole
    text: str


class ExchangeResult(BaseModel):
    """
    Outcome of one send().

    Exactly one of ``text`` / ``failure_kind`` is set. ``guidance`` marks a
    canned reply produced locally by the input guards (no network call).
    """
    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    guidance: bool = False
    latency_ms: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.failure_kind is None

    @classmethod
    def reply(cls, text: str, latency_ms: Optional[float] = None) -> "ExchangeResult":
        return cls(text=text, latency_ms=latency_ms)

    @classmethod
    def canned(cls, text: str) -> "ExchangeResult":
        return cls(text=text, guidance=True)

    @classmethod
    def failure(cls, kind: FailureKind) -> "ExchangeResult":
        return cls(failure_kind=kind)


# ─────────────────────────────────────────────────────────────────────────────
# Generation config
# ─────────────────────────────────────────────────────────────────────────────


class GenerationConfig(BaseModel):
    """Per-session generation parameters bound at chat creation."""
    model: str = "gemini-2.5-flash"
    temperature: float = 0.7
    top_p: float = 0.8
    top_k: int = 40
    max_output_tokens: int = 1024


class ChatHandle(BaseModel):
    """
    A stateful chat session bound to one persona and one prior history.

    ``session`` is the backend's opaque chat object; the client owns the
    in-flight flag.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    handle_id: str
    persona_prompt: str
    history: list[ChatTurn] = Field(default_factory=list)
    session: Any = None
    in_flight: bool = False
