"""queue.py — Prompts waiting for a busy session.

A user who types while claude is still answering gets their message
parked here. The orchestrator pops the next one when the turn ends.

One FIFO per user. Nothing here awaits: put/pop are plain list work, so
the orchestrator can call them from inside an event handler.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

import pendulum


@dataclass
class PendingMessage:
    """A prompt waiting its turn.

    chat_id: Where the reply should go once it runs.
    """

    content: str
    chat_id: int | str | None = None
    enqueued_at: pendulum.DateTime = field(default_factory=lambda: pendulum.now("UTC"))


class PendingQueues:
    """Per-user FIFO queues of PendingMessage."""

    def __init__(self):
        self._queues: dict[int | str, deque[PendingMessage]] = {}

    def put(self, user_id: int | str, message: PendingMessage) -> int:
        """Append a message. Returns its 1-based position in the queue."""
        queue = self._queues.setdefault(user_id, deque())
        queue.append(message)
        return len(queue)

    def pop(self, user_id: int | str) -> PendingMessage | None:
        """Remove and return the oldest message, or None if there isn't one."""
        queue = self._queues.get(user_id)
        if not queue:
            return None
        message = queue.popleft()
        if not queue:
            del self._queues[user_id]
        return message

    def size(self, user_id: int | str) -> int:
        return len(self._queues.get(user_id, ()))

    def peek(self, user_id: int | str) -> list[PendingMessage]:
        """Snapshot of a user's queue, oldest first."""
        return list(self._queues.get(user_id, ()))

    def clear(self, user_id: int | str) -> list[PendingMessage]:
        """Drop a user's queue. Returns what was in it."""
        return list(self._queues.pop(user_id, ()))

    @property
    def total(self) -> int:
        return sum(len(q) for q in self._queues.values())
