"""transcripts.py — Read claude's JSONL session transcripts.

claude writes one append-only JSONL file per session under
~/.claude/projects/<munged working directory>/<session id>.jsonl. We never
write these; we read them to recover things the live stream can't tell us
after a restart:

  - historical token usage (result.usage, assistant message.usage, usage)
  - the parent link (first record's parentUuid) that chains a resumed or
    compacted session back to its predecessor
  - a title (first summary record, else the first real user message)
  - how much of the context is tool output

JSONL format (observed):
  - type: "summary"          → summary text, usually first
  - type: "user"             → user input or tool_result blocks
  - type: "assistant"        → assistant message, may carry usage
  - type: "result"           → end of turn, carries usage
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import pendulum

from .tokens import TokenUsage


TITLE_MAX_CHARS = 60


def sessions_dir_for(working_directory: str, home: Path | None = None) -> Path:
    """claude's transcript directory for a project path.

    /Users/me/proj → ~/.claude/projects/-Users-me-proj
    """
    munged = working_directory.replace("/", "-").lstrip("-")
    return (home or Path.home()) / ".claude" / "projects" / f"-{munged}"


def _read_jsonl(path: Path) -> list[dict]:
    """Read a JSONL file and return parsed records.

    Skips blank lines and malformed JSON silently (matching engine behavior).
    """
    records = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            try:
                record = json.loads(text)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                records.append(record)
    return records


def _record_usage(record: dict) -> dict | None:
    if record.get("type") == "result" and record.get("usage"):
        return record["usage"]
    message = record.get("message")
    if record.get("type") == "assistant" and isinstance(message, dict) and message.get("usage"):
        return message["usage"]
    return record.get("usage") or None


def _first_text(content) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                return block.get("text")
    return None


@dataclass
class TranscriptInfo:
    """One session file, as shown in a session picker."""

    session_id: str
    path: Path
    timestamp: str
    modified: pendulum.DateTime
    preview: str
    message_count: int
    parent_session_id: str | None = None
    cumulative_message_count: int = 0


class TranscriptStore:
    """Read-only access to one project's transcript directory."""

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)

    def path_for(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.jsonl"

    def exists(self, session_id: str) -> bool:
        return bool(session_id) and self.path_for(session_id).exists()

    def records(self, session_id: str) -> list[dict]:
        """All records, or [] if the transcript doesn't exist or can't be read."""
        if not self.exists(session_id):
            return []
        try:
            return _read_jsonl(self.path_for(session_id))
        except OSError:
            return []

    def token_usage(self, session_id: str) -> TokenUsage | None:
        """Summed usage for one session, or None if it recorded none."""
        usage = TokenUsage()
        for record in self.records(session_id):
            found = _record_usage(record)
            if found:
                usage.add(found)
        return usage if usage.transaction_count else None

    def parent_session_id(self, session_id: str) -> str | None:
        """The parentUuid of the first record, if any."""
        records = self.records(session_id)
        if not records:
            return None
        return records[0].get("parentUuid") or None

    def summary(self, session_id: str) -> str | None:
        """A title for the session.

        The first summary record within the first five lines wins. Otherwise
        the first non-meta user text within ten lines, truncated. Slash
        command metadata doesn't count as a title.
        """
        records = self.records(session_id)
        for record in records[:5]:
            if record.get("type") == "summary" and record.get("summary"):
                return record["summary"]
        for record in records[:10]:
            if record.get("type") != "user" or record.get("isMeta"):
                continue
            text = _first_text((record.get("message") or {}).get("content"))
            if not text or not text.strip() or "<command-name>" in text:
                continue
            if len(text) > TITLE_MAX_CHARS:
                return text[:TITLE_MAX_CHARS] + "..."
            return text
        return None

    def tool_results_tokens(self, session_id: str) -> int:
        """Rough token count of tool_result content (4 chars per token)."""
        chars = 0
        for record in self.records(session_id):
            if record.get("type") != "user":
                continue
            content = (record.get("message") or {}).get("content")
            if not isinstance(content, list):
                continue
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result" and block.get("content"):
                    value = block["content"]
                    chars += len(value if isinstance(value, str) else json.dumps(value))
        return -(-chars // 4)

    def list_sessions(self, access_times: dict[str, pendulum.DateTime] | None = None) -> list[TranscriptInfo]:
        """Every transcript in the directory, most relevant first.

        Sessions this user touched (access_times) come first, newest access
        first; the rest follow by file modification time.
        """
        if not self.sessions_dir.is_dir():
            return []

        sessions: list[TranscriptInfo] = []
        for path in self.sessions_dir.glob("*.jsonl"):
            try:
                records = _read_jsonl(path)
                stat = path.stat()
            except OSError:
                continue
            if not records:
                continue
            first = records[0]
            modified = pendulum.from_timestamp(stat.st_mtime)
            if first.get("type") == "summary":
                preview = first.get("summary") or "No summary available"
            elif first.get("type") == "user":
                preview = _first_text((first.get("message") or {}).get("content")) or "Complex message"
            else:
                preview = "Session without description"
            sessions.append(
                TranscriptInfo(
                    session_id=path.stem,
                    path=path,
                    timestamp=first.get("timestamp") or modified.to_iso8601_string(),
                    modified=modified,
                    preview=preview,
                    message_count=len(records),
                    parent_session_id=first.get("parentUuid") or None,
                )
            )

        children: dict[str, list[TranscriptInfo]] = {}
        for info in sessions:
            if info.parent_session_id:
                children.setdefault(info.parent_session_id, []).append(info)

        def cumulative(info: TranscriptInfo, visited: set[str]) -> int:
            if info.session_id in visited:
                return 0
            visited.add(info.session_id)
            return info.message_count + sum(
                cumulative(child, visited) for child in children.get(info.session_id, [])
            )

        for info in sessions:
            info.cumulative_message_count = cumulative(info, set())

        access_times = access_times or {}

        def sort_key(info: TranscriptInfo):
            accessed = access_times.get(info.session_id)
            if accessed is not None:
                return (0, -accessed.timestamp())
            return (1, -info.modified.timestamp())

        sessions.sort(key=sort_key)
        return sessions
