"""Tests for history.py — per-user session history."""

import pendulum

from session_relay.history import HistoryBook, SessionHistory


class TestSessionHistory:
    def test_record(self):
        history = SessionHistory()
        history.record("S1")
        assert "S1" in history
        assert len(history) == 1
        assert "S1" in history.access_times

    def test_ignores_empty_ids(self):
        history = SessionHistory()
        history.record(None)
        history.record("")
        assert len(history) == 0

    def test_no_duplicates(self):
        history = SessionHistory()
        history.record("S1")
        history.record("S2")
        history.record("S1")
        assert list(history) == ["S1", "S2"]

    def test_capacity_evicts_oldest(self):
        history = SessionHistory(capacity=3)
        for sid in ("S1", "S2", "S3", "S4"):
            history.record(sid)
        assert list(history) == ["S2", "S3", "S4"]
        assert "S1" not in history.access_times

    def test_default_capacity(self):
        history = SessionHistory()
        for n in range(60):
            history.record(f"S{n}")
        assert len(history) == 50
        assert "S9" not in history
        assert "S10" in history

    def test_recent_by_access_time(self):
        history = SessionHistory()
        history.record("S1")
        history.record("S2")
        history.record("S3")
        history._accessed["S1"] = pendulum.datetime(2026, 1, 1, 12, 10)
        history._accessed["S2"] = pendulum.datetime(2026, 1, 1, 12, 0)
        history._accessed["S3"] = pendulum.datetime(2026, 1, 1, 12, 5)
        assert history.recent() == ["S1", "S3", "S2"]
        assert history.recent(limit=1) == ["S1"]

    def test_touch_unknown_is_ignored(self):
        history = SessionHistory()
        history.touch("nope")
        assert history.access_times == {}


class TestHistoryBook:
    def test_per_user(self):
        book = HistoryBook()
        book.record(1, "S1")
        book.record(2, "S2")
        assert list(book.for_user(1)) == ["S1"]
        assert list(book.for_user(2)) == ["S2"]

    def test_none_id_does_not_create_history(self):
        book = HistoryBook()
        book.record(1, None)
        assert 1 not in book

    def test_capacity_passed_through(self):
        book = HistoryBook(capacity=2)
        for sid in ("a", "b", "c"):
            book.record(7, sid)
        assert list(book.for_user(7)) == ["b", "c"]
