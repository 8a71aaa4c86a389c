"""storage/ — best-effort local persistence for Luna sessions."""

from luna.storage.session_store import KeyValueNamespace, SessionStore

__all__ = ["KeyValueNamespace", "SessionStore"]
