"""history.py — Which sessions each user has been through.

Every time a session object is destroyed (end, cancel, start-new, compact
replacement) its external id lands here, so the user can find it again.
"""

from __future__ import annotations

import pendulum

from .config import HISTORY_CAPACITY


class SessionHistory:
    """Bounded, duplicate-free list of session ids plus access times.

    Oldest entries are evicted first once capacity is reached.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        self.capacity = capacity
        self._ids: list[str] = []
        self._accessed: dict[str, pendulum.DateTime] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._ids

    def __iter__(self):
        return iter(list(self._ids))

    @property
    def access_times(self) -> dict[str, pendulum.DateTime]:
        return dict(self._accessed)

    def record(self, session_id: str | None) -> None:
        """Remember a session id and mark it accessed now."""
        if not session_id:
            return
        if session_id not in self._ids:
            self._ids.append(session_id)
            while len(self._ids) > self.capacity:
                evicted = self._ids.pop(0)
                self._accessed.pop(evicted, None)
        self.touch(session_id)

    def touch(self, session_id: str) -> None:
        if session_id in self._ids:
            self._accessed[session_id] = pendulum.now("UTC")

    def recent(self, limit: int = 10) -> list[str]:
        """Most recently accessed first."""
        epoch = pendulum.from_timestamp(0)
        ranked = sorted(
            self._ids,
            key=lambda sid: self._accessed.get(sid, epoch),
            reverse=True,
        )
        return ranked[:limit]


class HistoryBook:
    """One SessionHistory per user, created on first use."""

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        self.capacity = capacity
        self._histories: dict[int | str, SessionHistory] = {}

    def __contains__(self, user_id: int | str) -> bool:
        return user_id in self._histories

    def for_user(self, user_id: int | str) -> SessionHistory:
        if user_id not in self._histories:
            self._histories[user_id] = SessionHistory(self.capacity)
        return self._histories[user_id]

    def record(self, user_id: int | str, session_id: str | None) -> None:
        if session_id:
            self.for_user(user_id).record(session_id)
