"""signatures.py — Failure signatures for context-window overflow.

claude doesn't give us a structured "context exceeded" error. We find out
from text: stderr lines and, sometimes, the assistant's own reply. A match
is only half the signal. The other half is the exit code, because plenty
of healthy turns *mention* a prompt being too long.
"""

from __future__ import annotations

import re
from typing import Iterable, Pattern


DEFAULT_PROMPT_TOO_LONG_PATTERNS: tuple[str, ...] = (
    r"input length and max_tokens exceed context limit",
    r"exceed context limit",
    r"context limit.*exceeded",
    r"prompt.*too.*long",
)


class SignatureSet:
    """A set of case-insensitive patterns; matches() if any of them hits."""

    def __init__(self, patterns: Iterable[str | Pattern[str]] = DEFAULT_PROMPT_TOO_LONG_PATTERNS):
        self._patterns: list[Pattern[str]] = [
            p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE)
            for p in patterns
        ]

    def __len__(self) -> int:
        return len(self._patterns)

    def add(self, pattern: str | Pattern[str]) -> None:
        """Register another pattern."""
        if not isinstance(pattern, re.Pattern):
            pattern = re.compile(pattern, re.IGNORECASE)
        self._patterns.append(pattern)

    def matches(self, text: str | None) -> bool:
        if not text:
            return False
        return any(p.search(text) for p in self._patterns)


PROMPT_TOO_LONG = SignatureSet()


def should_emit_prompt_too_long(detected: bool, exit_code: int | None) -> bool:
    """The two-signal rule.

    A signature match with exit code 0 is a false positive: the turn
    succeeded, the text just talked about long prompts.
    """
    return detected and exit_code is not None and exit_code != 0
