"""Shared test fixtures for session_relay.

Protocol fixtures follow the stream-json records `claude -p --output-format
stream-json --verbose` writes to stdout, one JSON object per line.
"""

import json
import sys
from pathlib import Path

import logfire
import pytest


logfire.configure(send_to_logfire=False, console=False)

FAKE_CLAUDE = Path(__file__).parent / "fake_claude.py"


# -- Markers ------------------------------------------------------------------


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: marks tests that need a live claude process",
    )


# -- Canned protocol fixtures ------------------------------------------------


@pytest.fixture
def sample_init():
    """system/init, the first record of every invocation."""
    return {
        "type": "system",
        "subtype": "init",
        "session_id": "S1",
        "model": "claude-sonnet-4-20250514",
        "cwd": "/tmp/project",
        "tools": ["Bash", "Read", "Write", "Edit"],
        "permissionMode": "bypassPermissions",
    }


@pytest.fixture
def sample_assistant_message():
    """An assistant response with a text content block and usage."""
    return {
        "type": "assistant",
        "session_id": "S1",
        "message": {
            "id": "msg_01",
            "content": [{"type": "text", "text": "Hello! How can I help?"}],
            "usage": {"input_tokens": 100, "output_tokens": 20},
        },
    }


@pytest.fixture
def sample_tool_use_message():
    """An assistant response containing text, thinking and tool use."""
    return {
        "type": "assistant",
        "session_id": "S1",
        "message": {
            "id": "msg_02",
            "content": [
                {"type": "thinking", "thinking": "Need to look.", "signature": "sig"},
                {"type": "text", "text": "Let me check that."},
                {
                    "type": "tool_use",
                    "id": "tool_01ABC",
                    "name": "Bash",
                    "input": {"command": "echo hello", "description": "Say hello"},
                },
            ],
        },
    }


@pytest.fixture
def sample_tool_result():
    return {
        "type": "user",
        "session_id": "S1",
        "message": {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": "tool_01ABC", "content": "hello", "is_error": False}
            ],
        },
    }


@pytest.fixture
def sample_result():
    """End-of-turn result record."""
    return {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "session_id": "S1",
        "result": "Hello! How can I help?",
        "total_cost_usd": 0.0042,
        "duration_ms": 1234,
        "usage": {"input_tokens": 10, "output_tokens": 5},
    }


@pytest.fixture
def sample_conversation_turn(sample_init, sample_assistant_message, sample_result):
    """A minimal conversation turn: init + assistant text + result."""
    return [sample_init, sample_assistant_message, sample_result]


# -- Helpers ------------------------------------------------------------------


@pytest.fixture
def ndjson_lines():
    """Helper: convert a list of dicts to newline-delimited JSON bytes."""
    def _make(events: list[dict]) -> bytes:
        lines = [json.dumps(e) for e in events]
        return ("\n".join(lines) + "\n").encode()
    return _make


@pytest.fixture
def fake_claude(tmp_path, monkeypatch):
    """A stand-in claude executable.

    Call it with a script: stdout records (dicts, or raw strings written
    as-is), stderr text, exit code, and an optional delay before exiting.
    Returns the command list to hand to Engine/Compactor. Every run appends
    its argv to `fake_claude.argv_log`.
    """
    argv_log = tmp_path / "argv.jsonl"

    def _make(stdout=(), stderr: str = "", exit_code: int = 0, sleep: float = 0.0) -> list[str]:
        script = tmp_path / "script.json"
        script.write_text(json.dumps({
            "stdout": list(stdout),
            "stderr": stderr,
            "exit_code": exit_code,
            "sleep": sleep,
        }))
        monkeypatch.setenv("FAKE_CLAUDE_SCRIPT", str(script))
        monkeypatch.setenv("FAKE_CLAUDE_ARGV_LOG", str(argv_log))
        return [sys.executable, str(FAKE_CLAUDE)]

    def _argv() -> list[list[str]]:
        if not argv_log.exists():
            return []
        return [json.loads(line) for line in argv_log.read_text().splitlines() if line]

    _make.argv_log = argv_log
    _make.argv = _argv
    return _make


@pytest.fixture
def write_transcript(tmp_path):
    """Write a claude JSONL transcript into a sessions directory."""
    sessions_dir = tmp_path / "sessions"
    sessions_dir.mkdir()

    def _write(session_id: str, records: list[dict]) -> Path:
        path = sessions_dir / f"{session_id}.jsonl"
        path.write_text("".join(json.dumps(r) + "\n" for r in records))
        return path

    _write.sessions_dir = sessions_dir
    return _write
