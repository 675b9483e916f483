"""tokens.py — Token accounting.

Three pieces:

  TokenUsage       — running counters for one session. total_tokens is
                     derived, so it can't drift from input + output.
  TokenLedger      — cumulative usage across a chain of resumed sessions,
                     memoized per starting id.
  ContextEstimator — how full is the context window? Static overhead +
                     memory files + tool results + the conversation so far.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import logfire

from .models import context_window

if TYPE_CHECKING:
    from .transcripts import TranscriptStore


# Cost-only usage: rough Sonnet 4 pricing, dollars per million tokens.
INPUT_COST_PER_MTOK = 12.0
OUTPUT_COST_PER_MTOK = 60.0
INPUT_COST_SHARE = 0.7

CHARS_PER_TOKEN = 4


def _as_int(value) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class TokenUsage:
    """Monotonic token counters for a session."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    transaction_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, usage: dict | None, cost: float | None = None) -> bool:
        """Fold one usage record in. Returns True if anything was counted.

        A record with no tokens but a positive cost still happened; we
        estimate its tokens from the cost rather than drop it.
        """
        usage = usage or {}
        input_tokens = _as_int(usage.get("input_tokens"))
        output_tokens = _as_int(usage.get("output_tokens"))
        cache_read = _as_int(usage.get("cache_read_input_tokens"))
        cache_creation = _as_int(usage.get("cache_creation_input_tokens"))
        cost = cost if isinstance(cost, (int, float)) and cost > 0 else 0.0

        has_tokens = any((input_tokens, output_tokens, cache_read, cache_creation))
        if not has_tokens and not cost:
            return False

        if not has_tokens:
            input_tokens, output_tokens = estimate_tokens_from_cost(cost)

        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cache_read_tokens += cache_read
        self.cache_creation_tokens += cache_creation
        self.transaction_count += 1
        return True

    def merge(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.transaction_count += other.transaction_count


def estimate_tokens_from_cost(cost: float) -> tuple[int, int]:
    """(input, output) tokens for a dollar cost, assuming a 70/30 split."""
    input_tokens = round(cost * INPUT_COST_SHARE / INPUT_COST_PER_MTOK * 1_000_000)
    output_tokens = round(cost * (1 - INPUT_COST_SHARE) / OUTPUT_COST_PER_MTOK * 1_000_000)
    return input_tokens, output_tokens


# -- Cumulative usage across session chains ---------------------------------------


class TokenLedger:
    """Memoized cumulative usage keyed by the id the walk started from.

    Entries are never invalidated. If a transcript is compacted after its
    chain was summed, the cached total is stale until the process restarts.
    """

    def __init__(self, transcripts: "TranscriptStore"):
        self._transcripts = transcripts
        self._cache: dict[str, TokenUsage] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def cached(self, session_id: str) -> TokenUsage | None:
        return self._cache.get(session_id)

    def cumulative(self, session_id: str | None) -> TokenUsage:
        """Sum usage over session_id and its parents.

        Stops at a session with no parent, or at an id already visited
        (parent cycles do happen in damaged transcripts).
        """
        if not session_id:
            return TokenUsage()
        if session_id in self._cache:
            return self._cache[session_id]

        total = TokenUsage()
        visited: set[str] = set()
        current: str | None = session_id
        while current and current not in visited:
            visited.add(current)
            usage = self._transcripts.token_usage(current)
            if usage is not None:
                total.merge(usage)
            current = self._transcripts.parent_session_id(current)

        logfire.debug(
            "Cumulative tokens for {session_id}: {total} over {links} session(s)",
            session_id=session_id,
            total=total.total_tokens,
            links=len(visited),
        )
        self._cache[session_id] = total
        return total


# -- Context window estimate ------------------------------------------------------


@dataclass
class StaticOverhead:
    """What claude loads before the conversation starts.

    Measured once from claude's /context output; these are the fallbacks.
    """

    system_prompt: int = 3_000
    system_tools: int = 13_300
    mcp_tools: int = 13_400
    custom_agents: int = 1_600

    @property
    def total(self) -> int:
        return self.system_prompt + self.system_tools + self.mcp_tools + self.custom_agents


@dataclass
class ContextBreakdown:
    overhead: StaticOverhead = field(default_factory=StaticOverhead)
    memory_files: int = 0
    tool_results: int = 0
    conversation: int = 0
    context_limit: int = 200_000

    @property
    def static_total(self) -> int:
        return self.overhead.total

    @property
    def dynamic_total(self) -> int:
        return self.memory_files + self.tool_results + self.conversation

    @property
    def grand_total(self) -> int:
        return self.static_total + self.dynamic_total

    @property
    def usage_percentage(self) -> float:
        if self.context_limit <= 0:
            return 100.0
        return self.grand_total / self.context_limit * 100

    @property
    def free_space(self) -> int:
        return self.context_limit - self.grand_total


class ContextEstimator:
    """Estimates how much of the context window a session is using."""

    def __init__(
        self,
        working_directory: str,
        transcripts: "TranscriptStore | None" = None,
        overhead: StaticOverhead | None = None,
        home: Path | None = None,
    ):
        self.working_directory = working_directory
        self.transcripts = transcripts
        self.overhead = overhead or StaticOverhead()
        self._home = home or Path.home()
        self._tool_results_cache: dict[str, int] = {}

    def memory_files_tokens(self) -> int:
        """Global and project CLAUDE.md, sized at 4 chars per token."""
        tokens = 0
        for path in (
            self._home / ".claude" / "CLAUDE.md",
            Path(self.working_directory) / "CLAUDE.md",
        ):
            try:
                tokens += math.ceil(path.stat().st_size / CHARS_PER_TOKEN)
            except OSError:
                continue
        return tokens

    def tool_results_tokens(self, session_id: str | None) -> int:
        if not session_id or self.transcripts is None:
            return 0
        if session_id not in self._tool_results_cache:
            self._tool_results_cache[session_id] = self.transcripts.tool_results_tokens(session_id)
        return self._tool_results_cache[session_id]

    def breakdown(self, session_id: str | None, conversation_tokens: int, model: str | None) -> ContextBreakdown:
        return ContextBreakdown(
            overhead=self.overhead,
            memory_files=self.memory_files_tokens(),
            tool_results=self.tool_results_tokens(session_id),
            conversation=conversation_tokens,
            context_limit=context_window(model),
        )
