"""session.py — One user's live conversation with claude.

A Session is the orchestrator's bookkeeping for a user: which engine
runs their turns, which claude session id those turns land in, how many
tokens they've used, and where they are in the compaction cycle.

Session objects are disposable. Ending, cancelling, starting over and
compaction all replace the object; the claude session id survives in
the user's history and in the persisted project record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pendulum

from .compact import IN_PROGRESS_STATES, CompactState
from .tokens import TokenUsage

if TYPE_CHECKING:
    from .engine import Engine


def _now() -> pendulum.DateTime:
    return pendulum.now("UTC")


@dataclass
class Session:
    user_id: int | str
    chat_id: int | str | None
    engine: "Engine"
    external_session_id: str | None = None
    message_count: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    created_at: pendulum.DateTime = field(default_factory=_now)
    last_activity_time: pendulum.DateTime = field(default_factory=_now)
    is_healthy: bool = True
    last_health_check: pendulum.DateTime = field(default_factory=_now)
    is_continuation: bool = False
    compact_state: CompactState = CompactState.NORMAL
    session_start_time: pendulum.DateTime | None = None
    session_duration: pendulum.Duration | None = None
    last_prompt: str | None = None
    title: str | None = None
    counted_message_ids: set[str] = field(default_factory=set, repr=False)

    @property
    def auto_compact_in_progress(self) -> bool:
        return self.compact_state in IN_PROGRESS_STATES

    @property
    def is_compact_session(self) -> bool:
        """Born from a compaction. Never triggers another one by threshold."""
        return self.compact_state is CompactState.RECOVERED

    @property
    def uptime(self) -> pendulum.Duration:
        return _now() - self.created_at

    def touch(self) -> None:
        self.last_activity_time = _now()

    def seconds_since_activity(self) -> float:
        return (_now() - self.last_activity_time).total_seconds()

    def begin_turn(self, prompt: str) -> None:
        self.session_start_time = _now()
        self.last_prompt = prompt
        self.touch()

    def end_turn(self) -> pendulum.Duration | None:
        """Close turn timing. Returns the turn's duration, if a turn was open."""
        if self.session_start_time is None:
            return None
        self.session_duration = _now() - self.session_start_time
        self.session_start_time = None
        return self.session_duration
