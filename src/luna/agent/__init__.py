"""
agent/ — Luna Turn Controller

Public API:
    from luna.agent.controller import TurnController
    from luna.agent.types import ConversationPhase, Message, SessionProfile

The controller is imported from its module directly; storage depends on
agent.types, so this package keeps its import surface to the data model.
"""

from luna.agent.types import (
    ConversationPhase,
    Message,
    RetentionMode,
    Sender,
    SessionProfile,
    SymbolicIdentity,
)

__all__ = [
    "ConversationPhase",
    "Message",
    "RetentionMode",
    "Sender",
    "SessionProfile",
    "SymbolicIdentity",
]
