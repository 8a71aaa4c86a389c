"""
storage/session_store.py — Local Session Store

Keyed persistence for the profile, per-identity history and the theme
preference. Backed by KeyValueNamespace: a directory holding one JSON
document per key, each written atomically (temp file + os.replace).

Every operation is synchronous and best-effort. Read and write failures are
logged and swallowed; callers never see a storage exception. Several
processes sharing one directory are last-writer-wins.

Keys:
    luna_profile              SessionProfile
    luna_history_<id>         list[Message]
    luna_theme                {"theme": "<theme id>"}
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError

from luna.agent.types import Message, SessionProfile
from luna.exceptions import StorageError
from luna.observability.logger import get_logger

log = get_logger(__name__)

PROFILE_KEY = "luna_profile"
HISTORY_KEY_PREFIX = "luna_history_"
THEME_KEY = "luna_theme"

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")
_MESSAGES = TypeAdapter(list[Message])


class KeyValueNamespace:
    """
    A directory of JSON documents, one per key.

    Raises StorageError on any failure; SessionStore is the layer that
    swallows them.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    def _path(self, key: str) -> Path:
        return self.root / f"{_SAFE_KEY.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"read {key}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_name: Optional[str] = None
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.root, prefix=f".{path.stem}.", suffix=".tmp", delete=False
            ) as tmp:
                tmp.write(value)
                tmp_name = tmp.name
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"write {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"delete {key}: {e}") from e

    def keys(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))


class SessionStore:
    """
    Best-effort persistence for the turn controller.

    Usage::

        store = SessionStore.from_directory("./data/sessions")
        store.save_profile(profile)
        store.save_history(profile.identity.id, messages)
        messages = store.load_history(profile.identity.id)
    """

    def __init__(self, namespace: KeyValueNamespace) -> None:
        self._ns = namespace

    @classmethod
    def from_directory(cls, data_dir: str | Path) -> "SessionStore":
        return cls(KeyValueNamespace(data_dir))

    # ── Profile ───────────────────────────────────────────────────────────────

    def save_profile(self, profile: SessionProfile) -> None:
        self._write(PROFILE_KEY, profile.model_dump_json())

    def load_profile(self) -> Optional[SessionProfile]:
        raw = self._read(PROFILE_KEY)
        if raw is None:
            return None
        try:
            return SessionProfile.model_validate_json(raw)
        except ValidationError as e:
            log.warning("store.profile_corrupt", error=str(e))
            return None

    def clear_profile(self) -> None:
        self._remove(PROFILE_KEY)

    # ── History ───────────────────────────────────────────────────────────────

    def save_history(self, identity_id: str, messages: list[Message]) -> None:
        if not identity_id:
            return
        self._write(HISTORY_KEY_PREFIX + identity_id, _MESSAGES.dump_json(messages).decode("utf-8"))

    def load_history(self, identity_id: str) -> list[Message]:
        if not identity_id:
            return []
        raw = self._read(HISTORY_KEY_PREFIX + identity_id)
        if raw is None:
            return []
        try:
            return _MESSAGES.validate_json(raw)
        except ValidationError as e:
            log.warning("store.history_corrupt", identity_id=identity_id, error=str(e))
            return []

    def clear_history(self, identity_id: str) -> None:
        if not identity_id:
            return
        self._remove(HISTORY_KEY_PREFIX + identity_id)

    # ── Theme ─────────────────────────────────────────────────────────────────

    def save_theme_preference(self, theme_id: str) -> None:
        self._write(THEME_KEY, json.dumps({"theme": theme_id}))

    def load_theme_preference(self) -> Optional[str]:
        raw = self._read(THEME_KEY)
        if raw is None:
            return None
        try:
            data: Any = json.loads(raw)
        except json.JSONDecodeError as e:
            log.warning("store.theme_corrupt", error=str(e))
            return None
        theme = data.get("theme") if isinstance(data, dict) else None
        return theme if isinstance(theme, str) and theme else None

    # ── Private helpers ───────────────────────────────────────────────────────

    def _read(self, key: str) -> Optional[str]:
        try:
            return self._ns.get(key)
        except StorageError as e:
            log.error("store.load_failed", key=key, error=str(e))
            return None

    def _write(self, key: str, value: str) -> None:
        try:
            self._ns.set(key, value)
        except StorageError as e:
            log.error("store.save_failed", key=key, error=str(e))

    def _remove(self, key: str) -> None:
        try:
            self._ns.delete(key)
        except StorageError as e:
            log.error("store.clear_failed", key=key, error=str(e))
