"""Tests for tokens.py — usage counters, chain totals, context estimate."""

import pytest

from session_relay.tokens import (
    ContextEstimator,
    StaticOverhead,
    TokenLedger,
    TokenUsage,
    estimate_tokens_from_cost,
)
from session_relay.transcripts import TranscriptStore


# -- TokenUsage ---------------------------------------------------------------


class TestTokenUsage:
    def test_starts_empty(self):
        usage = TokenUsage()
        assert usage.total_tokens == 0
        assert usage.transaction_count == 0

    def test_add(self):
        usage = TokenUsage()
        assert usage.add({
            "input_tokens": 10,
            "output_tokens": 5,
            "cache_read_input_tokens": 3,
            "cache_creation_input_tokens": 2,
        })
        assert usage.input_tokens == 10
        assert usage.output_tokens == 5
        assert usage.cache_read_tokens == 3
        assert usage.cache_creation_tokens == 2
        assert usage.total_tokens == 15
        assert usage.transaction_count == 1

    def test_empty_usage_not_counted(self):
        usage = TokenUsage()
        assert usage.add({}) is False
        assert usage.add(None) is False
        assert usage.transaction_count == 0

    def test_garbage_values_count_as_zero(self):
        usage = TokenUsage()
        usage.add({"input_tokens": "12", "output_tokens": None})
        usage.add({"input_tokens": -5, "output_tokens": "lots"})
        assert usage.input_tokens == 12
        assert usage.output_tokens == 0

    def test_cost_only_is_estimated(self):
        usage = TokenUsage()
        assert usage.add({}, cost=0.12)
        # $0.084 of input at $12/M, $0.036 of output at $60/M
        assert usage.input_tokens == 7000
        assert usage.output_tokens == 600
        assert usage.transaction_count == 1

    def test_tokens_win_over_cost(self):
        usage = TokenUsage()
        usage.add({"input_tokens": 1, "output_tokens": 1}, cost=5.0)
        assert usage.total_tokens == 2

    def test_monotonic(self):
        usage = TokenUsage()
        totals = []
        for record in ({"input_tokens": 5}, {}, {"output_tokens": 3}, {"input_tokens": "x"}):
            usage.add(record)
            totals.append(usage.total_tokens)
            assert usage.total_tokens == usage.input_tokens + usage.output_tokens
        assert totals == sorted(totals)

    def test_merge(self):
        a = TokenUsage(input_tokens=1, output_tokens=2, transaction_count=1)
        a.merge(TokenUsage(input_tokens=10, output_tokens=20, cache_read_tokens=5, transaction_count=2))
        assert (a.input_tokens, a.output_tokens, a.cache_read_tokens, a.transaction_count) == (11, 22, 5, 3)


def test_estimate_tokens_from_cost():
    assert estimate_tokens_from_cost(0) == (0, 0)
    assert estimate_tokens_from_cost(1.2) == (70000, 6000)


# -- TokenLedger --------------------------------------------------------------


def _turn(parent, input_tokens, output_tokens):
    return [
        {"type": "user", "parentUuid": parent, "message": {"content": "hi"}},
        {"type": "result", "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens}},
    ]


class CountingStore(TranscriptStore):
    def __init__(self, sessions_dir):
        super().__init__(sessions_dir)
        self.reads = 0

    def records(self, session_id):
        self.reads += 1
        return super().records(session_id)


class TestTokenLedger:
    def test_single_session(self, write_transcript):
        write_transcript("A", _turn(None, 10, 5))
        ledger = TokenLedger(TranscriptStore(write_transcript.sessions_dir))
        assert ledger.cumulative("A").total_tokens == 15

    def test_chain(self, write_transcript):
        write_transcript("C", _turn("B", 1, 1))
        write_transcript("B", _turn("A", 10, 10))
        write_transcript("A", _turn(None, 100, 100))
        ledger = TokenLedger(TranscriptStore(write_transcript.sessions_dir))
        total = ledger.cumulative("C")
        assert total.total_tokens == 222
        assert total.transaction_count == 3

    def test_cycle_counts_each_session_once(self, write_transcript):
        write_transcript("A", _turn("B", 10, 5))
        write_transcript("B", _turn("A", 100, 50))
        ledger = TokenLedger(TranscriptStore(write_transcript.sessions_dir))
        total = ledger.cumulative("A")
        assert total.total_tokens == 165
        assert total.input_tokens == 110

    def test_self_parent(self, write_transcript):
        write_transcript("A", _turn("A", 1, 1))
        ledger = TokenLedger(TranscriptStore(write_transcript.sessions_dir))
        assert ledger.cumulative("A").total_tokens == 2

    def test_missing_parent_ends_walk(self, write_transcript):
        write_transcript("B", _turn("gone", 3, 4))
        ledger = TokenLedger(TranscriptStore(write_transcript.sessions_dir))
        assert ledger.cumulative("B").total_tokens == 7

    def test_memoized(self, write_transcript):
        write_transcript("B", _turn("A", 10, 10))
        write_transcript("A", _turn(None, 1, 1))
        store = CountingStore(write_transcript.sessions_dir)
        ledger = TokenLedger(store)

        first = ledger.cumulative("B")
        reads = store.reads
        second = ledger.cumulative("B")
        assert second is first
        assert store.reads == reads
        assert "B" in ledger
        assert ledger.cached("B") is first

    def test_cache_is_not_invalidated(self, write_transcript):
        path = write_transcript("A", _turn(None, 1, 1))
        ledger = TokenLedger(TranscriptStore(write_transcript.sessions_dir))
        assert ledger.cumulative("A").total_tokens == 2
        path.write_text("")
        assert ledger.cumulative("A").total_tokens == 2

    def test_no_id(self, write_transcript):
        ledger = TokenLedger(TranscriptStore(write_transcript.sessions_dir))
        assert ledger.cumulative(None).total_tokens == 0
        assert len(ledger) == 0


# -- ContextEstimator ---------------------------------------------------------


class TestContextEstimator:
    def test_static_overhead_default(self):
        assert StaticOverhead().total == 31_300

    def test_breakdown(self, tmp_path, write_transcript):
        home = tmp_path / "home"
        (home / ".claude").mkdir(parents=True)
        (home / ".claude" / "CLAUDE.md").write_text("x" * 400)
        project = tmp_path / "project"
        project.mkdir()
        (project / "CLAUDE.md").write_text("y" * 401)
        write_transcript("S1", [{
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "t", "content": "z" * 800}]},
        }])

        estimator = ContextEstimator(
            str(project), TranscriptStore(write_transcript.sessions_dir), home=home
        )
        breakdown = estimator.breakdown("S1", conversation_tokens=1000, model="claude-sonnet-4-20250514")
        assert breakdown.memory_files == 100 + 101
        assert breakdown.tool_results == 200
        assert breakdown.conversation == 1000
        assert breakdown.context_limit == 200_000
        assert breakdown.grand_total == 31_300 + 201 + 200 + 1000
        assert breakdown.free_space == 200_000 - breakdown.grand_total
        assert breakdown.usage_percentage == pytest.approx(breakdown.grand_total / 2000)

    def test_missing_files_count_zero(self, tmp_path):
        estimator = ContextEstimator(str(tmp_path), None, overhead=StaticOverhead(0, 0, 0, 0), home=tmp_path)
        breakdown = estimator.breakdown("S1", 50_000, None)
        assert breakdown.usage_percentage == pytest.approx(25.0)
