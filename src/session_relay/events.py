"""events.py — The typed events that flow out of the engine and orchestrator.

Two families:

  Engine events — parsed from claude's stream-json stdout, plus a few the
  engine synthesizes at process exit (PromptTooLong, ProcessFailed,
  ProcessComplete).

  Notices — emitted by the orchestrator about session lifecycle (queued,
  cancelled, compaction progress, etc.)

Both go to the same observers. The set is closed: consumers dispatch with
isinstance() and never on strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# -- Base ---------------------------------------------------------------------


@dataclass
class Event:
    """Base event. `raw` is the wire record it came from ({} if synthesized)."""

    raw: dict = field(default_factory=dict)


# -- Stream records -------------------------------------------------------------


@dataclass
class SessionInit(Event):
    """system/init — claude has assigned (or confirmed) the session id."""

    session_id: str = ""
    model: str = ""
    cwd: str = ""
    tools: list = field(default_factory=list)
    permission_mode: str = ""


@dataclass
class AssistantText(Event):
    """A text block from an assistant message."""

    text: str = ""
    message_id: str | None = None
    session_id: str | None = None
    usage: dict | None = None


@dataclass
class AssistantThinking(Event):
    """A thinking block from an assistant message."""

    thinking: str = ""
    signature: str | None = None
    session_id: str | None = None


@dataclass
class ToolInvocation(Event):
    """A tool_use block. Subclasses narrow it by tool name.

    The engine never runs tools. These exist so downstream consumers can
    route (show a diff for edits, a command line for bash, ...).
    """

    tool_name: str = ""
    tool_id: str = ""
    input: dict = field(default_factory=dict)
    session_id: str | None = None


@dataclass
class TodoWrite(ToolInvocation):
    @property
    def todos(self) -> list:
        return self.input.get("todos") or []


@dataclass
class TodoRead(ToolInvocation):
    pass


@dataclass
class FileEdit(ToolInvocation):
    @property
    def file_path(self) -> str | None:
        return self.input.get("file_path")

    @property
    def old_string(self) -> str | None:
        return self.input.get("old_string")

    @property
    def new_string(self) -> str | None:
        return self.input.get("new_string")

    @property
    def replace_all(self) -> bool:
        return bool(self.input.get("replace_all", False))


@dataclass
class FileWrite(ToolInvocation):
    @property
    def file_path(self) -> str | None:
        return self.input.get("file_path")

    @property
    def content(self) -> str | None:
        return self.input.get("content")


@dataclass
class FileRead(ToolInvocation):
    @property
    def file_path(self) -> str | None:
        return self.input.get("file_path")

    @property
    def offset(self) -> int | None:
        return self.input.get("offset")

    @property
    def limit(self) -> int | None:
        return self.input.get("limit")


@dataclass
class BashCommand(ToolInvocation):
    @property
    def command(self) -> str | None:
        return self.input.get("command")

    @property
    def description(self) -> str | None:
        return self.input.get("description")


@dataclass
class TaskSpawn(ToolInvocation):
    @property
    def description(self) -> str | None:
        return self.input.get("description")

    @property
    def prompt(self) -> str | None:
        return self.input.get("prompt")

    @property
    def subagent_type(self) -> str | None:
        return self.input.get("subagent_type")


@dataclass
class McpToolCall(ToolInvocation):
    """Any tool whose name starts with mcp__."""


@dataclass
class UnknownTool(ToolInvocation):
    pass


TOOL_EVENT_TYPES: dict[str, type[ToolInvocation]] = {
    "todowrite": TodoWrite,
    "todoread": TodoRead,
    "edit": FileEdit,
    "write": FileWrite,
    "read": FileRead,
    "bash": BashCommand,
    "task": TaskSpawn,
}


def tool_event_type(tool_name: str) -> type[ToolInvocation]:
    """Pick the ToolInvocation subclass for a tool name (case-insensitive)."""
    known = TOOL_EVENT_TYPES.get(tool_name.lower())
    if known is not None:
        return known
    if tool_name.startswith("mcp__"):
        return McpToolCall
    return UnknownTool


@dataclass
class ToolResult(Event):
    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False
    session_id: str | None = None


@dataclass
class ExecutionResult(Event):
    """The terminal `result` record of a turn."""

    success: bool = True
    result: str | None = None
    error: str | None = None
    cost: float | None = None
    duration_ms: int | None = None
    usage: dict | None = None
    session_id: str | None = None


@dataclass
class ParseError(Event):
    """A stdout line that wasn't valid JSON. Reported, then skipped."""

    line: str = ""
    error: str = ""


# -- Synthesized at process exit ------------------------------------------------


@dataclass
class PromptTooLong(Event):
    """Context overflow confirmed: signature seen AND non-zero exit."""

    message: str = "Prompt is too long - context limit exceeded"
    session_id: str | None = None


@dataclass
class ProcessFailed(Event):
    """Non-zero exit without a recognised failure signature."""

    exit_code: int | None = None
    stderr: str = ""
    session_id: str | None = None


@dataclass
class ProcessComplete(Event):
    """The subprocess exited. Always the last event of an invocation."""

    success: bool = False
    exit_code: int | None = None
    cancelled: bool = False
    session_id: str | None = None


TERMINAL_EVENTS = (ExecutionResult, ProcessComplete)


# -- Orchestrator notices ---------------------------------------------------------


@dataclass
class Notice(Event):
    """Base for orchestrator-originated notices."""

    user_id: int | str | None = None


@dataclass
class MessageQueued(Notice):
    content: str = ""
    position: int = 0


@dataclass
class ExecutionError(Notice):
    """A turn failed for a reason other than context overflow."""

    message: str = ""


@dataclass
class SessionCancelled(Notice):
    session_id: str | None = None


@dataclass
class NothingToCancel(Notice):
    pass


@dataclass
class SessionEnded(Notice):
    session_id: str | None = None
    message_count: int = 0
    uptime_seconds: int = 0


@dataclass
class NewSessionStarted(Notice):
    previous_session_id: str | None = None


@dataclass
class CompactTriggered(Notice):
    """reason is "threshold" (proactive) or "prompt-too-long" (reactive)."""

    reason: str = ""
    session_id: str | None = None
    usage_percentage: float | None = None


@dataclass
class CompactRecovered(Notice):
    session_id: str | None = None


@dataclass
class CompactFailed(Notice):
    """Terminal for the session. The user should start a new one.

    dropped_prompts are the queued prompts that will never be sent.
    """

    session_id: str | None = None
    stage: str = ""
    detail: str = ""
    dropped_prompts: list[str] = field(default_factory=list)
