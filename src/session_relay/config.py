"""config.py — Runtime settings and the persisted key-value store.

Settings come from the environment, read once at import. RelayConfig
bundles them so tests (and embedders) can build one by hand instead.

The store is deliberately dumb: get/set/delete on top-level keys of a
JSON document. The orchestrator keeps one record per project under
"projectSessions" so a restart can resume where each project left off.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import logfire
import pendulum

from .models import DEFAULT_MODEL


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


CLAUDE_BIN = os.environ.get("RELAY_CLAUDE_BIN", "claude")
MODEL = os.environ.get("RELAY_MODEL", DEFAULT_MODEL)
WORKDIR = os.environ.get("RELAY_WORKDIR", os.getcwd())
CONFIG_FILE = os.environ.get(
    "RELAY_CONFIG_FILE", str(Path.home() / ".config" / "session-relay" / "config.json")
)
COMPACT_THRESHOLD = float(os.environ.get("RELAY_COMPACT_THRESHOLD", "95"))
# The probe doubles subprocess spawns per recovery. On by default.
VALIDATE_AFTER_COMPACT = _env_flag("RELAY_VALIDATE_AFTER_COMPACT", "1")

STALE_AFTER_SECONDS = 180
CANCEL_GRACE_SECONDS = 5.0
COMPACT_TIMEOUT_SECONDS = 600.0
VALIDATE_TIMEOUT_SECONDS = 30.0
HISTORY_CAPACITY = 50

PROJECT_SESSIONS_KEY = "projectSessions"
CURRENT_PROJECT_KEY = "currentProject"
ALWAYS_NEW_SESSION_KEY = "alwaysNewSession"


@dataclass
class RelayConfig:
    """Everything the orchestrator needs to know about its environment."""

    command: list[str] = field(default_factory=lambda: [CLAUDE_BIN])
    model: str = MODEL
    working_directory: str = WORKDIR
    extra_args: list[str] = field(default_factory=list)
    sessions_dir: Path | None = None  # None = derive from working_directory
    compact_threshold: float = COMPACT_THRESHOLD
    validate_after_compact: bool = VALIDATE_AFTER_COMPACT
    stale_after_seconds: float = STALE_AFTER_SECONDS
    cancel_grace_seconds: float = CANCEL_GRACE_SECONDS
    compact_timeout_seconds: float = COMPACT_TIMEOUT_SECONDS
    validate_timeout_seconds: float = VALIDATE_TIMEOUT_SECONDS
    history_capacity: int = HISTORY_CAPACITY

    @classmethod
    def from_env(cls) -> "RelayConfig":
        return cls()


# -- Store ------------------------------------------------------------------------


class ConfigStore(Protocol):
    """Opaque key-value persistence."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryConfigStore:
    """In-process store. Nothing survives a restart."""

    def __init__(self, initial: dict | None = None):
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonConfigStore:
    """A JSON file loaded once into memory, rewritten atomically on change."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._data: dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the file. A missing or corrupt file means an empty store."""
        if not self.path.exists():
            self._data = {}
            return
        try:
            self._data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logfire.error("Config load failed ({path}): {error}", path=str(self.path), error=str(e))
            self._data = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if self._data.get(key) == value:
            return  # no change, no write
        self._data[key] = value
        self._persist()

    def delete(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._persist()

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()


# -- Project session records ------------------------------------------------------


def load_project_session(store: ConfigStore, project: str, user_id: int | str) -> str | None:
    """Stored session id for this user in this project, or None."""
    record = (store.get(PROJECT_SESSIONS_KEY) or {}).get(project)
    if not record or record.get("userId") != str(user_id):
        return None
    return record.get("sessionId")


def save_project_session(
    store: ConfigStore, project: str, user_id: int | str, session_id: str, model: str
) -> None:
    sessions = dict(store.get(PROJECT_SESSIONS_KEY) or {})
    sessions[project] = {
        "userId": str(user_id),
        "sessionId": session_id,
        "timestamp": pendulum.now("UTC").to_iso8601_string(),
        "model": model,
    }
    store.set(PROJECT_SESSIONS_KEY, sessions)
    store.set(CURRENT_PROJECT_KEY, project)


def clear_project_session(store: ConfigStore, project: str, user_id: int | str) -> bool:
    """Drop the project's record if it belongs to this user."""
    sessions = dict(store.get(PROJECT_SESSIONS_KEY) or {})
    record = sessions.get(project)
    if not record or record.get("userId") != str(user_id):
        return False
    del sessions[project]
    store.set(PROJECT_SESSIONS_KEY, sessions)
    return True


def always_new_session(store: ConfigStore) -> bool:
    return bool(store.get(ALWAYS_NEW_SESSION_KEY, False))
