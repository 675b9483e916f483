"""errors.py — Exceptions raised by the orchestration core.

Only a few things are ever raised. Everything that happens after a
subprocess has started streaming is reported as an event instead.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for session_relay errors."""


class AlreadyProcessing(RelayError):
    """An invocation was started while the engine still had one in flight.

    Callers should queue the prompt instead of retrying.
    """

    def __init__(self, message: str = "Already processing a request"):
        super().__init__(message)


class EngineSpawnError(RelayError):
    """The assistant executable could not be spawned (missing, not executable)."""

    def __init__(self, command: str, cause: OSError):
        super().__init__(f"Failed to spawn {command!r}: {cause}")
        self.command = command
        self.cause = cause
