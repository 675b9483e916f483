"""Tests for queue.py — per-user pending prompts."""

from session_relay.queue import PendingMessage, PendingQueues


class TestPendingMessage:
    def test_defaults(self):
        msg = PendingMessage(content="hello")
        assert msg.content == "hello"
        assert msg.chat_id is None
        assert msg.enqueued_at is not None

    def test_chat_id(self):
        msg = PendingMessage(content="hi", chat_id=42)
        assert msg.chat_id == 42


class TestPendingQueues:
    def test_empty(self):
        queues = PendingQueues()
        assert queues.size(1) == 0
        assert queues.pop(1) is None
        assert queues.total == 0

    def test_positions(self):
        queues = PendingQueues()
        assert queues.put(1, PendingMessage("a")) == 1
        assert queues.put(1, PendingMessage("b")) == 2
        assert queues.put(2, PendingMessage("c")) == 1

    def test_fifo(self):
        queues = PendingQueues()
        for text in ("P1", "P2", "P3"):
            queues.put(1, PendingMessage(text))
        assert [queues.pop(1).content for _ in range(3)] == ["P1", "P2", "P3"]
        assert queues.pop(1) is None

    def test_users_are_independent(self):
        queues = PendingQueues()
        queues.put(1, PendingMessage("one"))
        queues.put(2, PendingMessage("two"))
        assert queues.pop(2).content == "two"
        assert queues.size(1) == 1
        assert queues.total == 1

    def test_peek_does_not_remove(self):
        queues = PendingQueues()
        queues.put(1, PendingMessage("a"))
        assert [m.content for m in queues.peek(1)] == ["a"]
        assert queues.size(1) == 1

    def test_clear(self):
        queues = PendingQueues()
        queues.put(1, PendingMessage("a"))
        queues.put(1, PendingMessage("b"))
        dropped = queues.clear(1)
        assert [m.content for m in dropped] == ["a", "b"]
        assert queues.size(1) == 0
        assert queues.clear(1) == []
