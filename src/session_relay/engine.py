"""engine.py — The claude subprocess. One prompt per invocation.

Every turn is a fresh `claude -p` process. We pass the prompt on the
command line, close stdin, and read newline-delimited JSON off stdout
until the process exits. Continuity between turns comes from claude's
own session files: `-c` continues the most recent session in the working
directory, `-r <id>` resumes a specific one.

Channels:
  1. argv   — mode flags, model, output format, the prompt itself
  2. stdout — stream-json records, parsed into typed events
  3. stderr — drained in the background and scanned for failure signatures

Usage:
    engine = Engine(model="claude-sonnet-4-20250514", on_event=handle)
    await engine.start_new("Hello!")        # returns once claude starts talking
    # handle() receives SessionInit, AssistantText, ..., ProcessComplete
    await engine.resume("abc-123", "And then?")
    engine.cancel()                          # SIGTERM, SIGKILL after 5s

Events are delivered to on_event one at a time, from the reader task, in
the order claude wrote them. The exit events come last:

    stdout events → PromptTooLong | ProcessFailed (optional) → ProcessComplete

The engine is back to not-active before the exit events go out, so a
handler can start the next invocation from inside on_event.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable

import logfire

from .config import CANCEL_GRACE_SECONDS, CLAUDE_BIN
from .errors import AlreadyProcessing, EngineSpawnError
from .events import (
    AssistantText,
    AssistantThinking,
    Event,
    ExecutionResult,
    ParseError,
    ProcessComplete,
    ProcessFailed,
    PromptTooLong,
    SessionInit,
    ToolResult,
    tool_event_type,
)
from .models import DEFAULT_MODEL
from .signatures import PROMPT_TOO_LONG, SignatureSet, should_emit_prompt_too_long


READ_CHUNK_SIZE = 65536
STDERR_TAIL_LINES = 50

SESSION_FLAGS = ("-c", "-r", "--continue", "--resume")

EventCallback = Callable[[Event], Awaitable[None]]


# -- State machine ------------------------------------------------------------


class EngineState(Enum):
    """Lifecycle of one invocation."""

    IDLE = auto()       # Nothing has run yet
    STARTING = auto()   # Spawned, no stdout yet
    STREAMING = auto()  # Reading records
    COMPLETED = auto()  # Last invocation exited 0
    ERRORED = auto()    # Last invocation exited non-zero, or was cancelled


ACTIVE_STATES = (EngineState.STARTING, EngineState.STREAMING)


# -- Framing ------------------------------------------------------------------


class LineBuffer:
    """Splits a byte stream into lines.

    Works on bytes so a multibyte character split across two reads is
    decoded only once both halves have arrived.
    """

    def __init__(self):
        self._pending = b""

    @property
    def pending(self) -> bytes:
        return self._pending

    def feed(self, data: bytes) -> list[str]:
        """Add a chunk. Returns the complete, non-blank lines it finished."""
        self._pending += data
        *complete, self._pending = self._pending.split(b"\n")
        return [text for text in (self._decode(line) for line in complete) if text]

    def flush(self) -> list[str]:
        """Whatever is left at EOF, as a final line."""
        remaining, self._pending = self._pending, b""
        text = self._decode(remaining)
        return [text] if text else []

    @staticmethod
    def _decode(line: bytes) -> str:
        return line.decode("utf-8", errors="replace").strip()


def filter_extra_args(extra_args: list[str], mode_args: list[str]) -> list[str]:
    """Drop --session-id <value> when the invocation already names a session.

    claude refuses --session-id together with -c/-r.
    """
    if not any(flag in SESSION_FLAGS for flag in mode_args):
        return list(extra_args)
    filtered = []
    skip_next = False
    for arg in extra_args:
        if skip_next:
            skip_next = False
            continue
        if arg == "--session-id":
            skip_next = True
            continue
        if arg.startswith("--session-id="):
            continue
        filtered.append(arg)
    return filtered


# -- Per-invocation state -----------------------------------------------------


@dataclass
class _Invocation:
    """Everything that belongs to one claude process.

    The reader task only ever touches its own invocation, so an old
    process winding down can't clobber the next one.
    """

    args: list[str]
    proc: asyncio.subprocess.Process
    session_id: str | None = None
    first_output: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    stderr_tail: deque = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    prompt_too_long: bool = False
    prompt_too_long_text: str | None = None
    cancelled: bool = False
    exit_code: int | None = None
    reader_task: asyncio.Task | None = None
    stderr_task: asyncio.Task | None = None
    kill_task: asyncio.Task | None = None


# -- Engine -------------------------------------------------------------------


class Engine:
    """Runs claude, one prompt at a time, and reports what it says.

    The engine does NOT decide what events mean. Token accounting, queues
    and recovery are the orchestrator's job; the engine parses, detects
    overflow signatures, and reports exit status.
    """

    def __init__(
        self,
        command: list[str] | None = None,
        model: str = DEFAULT_MODEL,
        working_directory: str | None = None,
        extra_args: list[str] | None = None,
        on_event: EventCallback | None = None,
        cancel_grace_seconds: float = CANCEL_GRACE_SECONDS,
        signatures: SignatureSet = PROMPT_TOO_LONG,
    ):
        self.command = list(command) if command else [CLAUDE_BIN]
        self.model = model
        self.working_directory = working_directory
        self.extra_args = list(extra_args or [])
        self.on_event = on_event
        self.cancel_grace_seconds = cancel_grace_seconds
        self.signatures = signatures

        self._state = EngineState.IDLE
        self._invocation: _Invocation | None = None
        self._current_session_id: str | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def current_session_id(self) -> str | None:
        """Session id from the latest system/init (or the one we resumed)."""
        return self._current_session_id

    @property
    def pid(self) -> int | None:
        return self._invocation.proc.pid if self._invocation else None

    @property
    def last_args(self) -> list[str] | None:
        """Arguments of the most recent invocation, without the command."""
        return list(self._invocation.args) if self._invocation else None

    def is_active(self) -> bool:
        return self._state in ACTIVE_STATES

    def is_responsive(self) -> bool:
        """False if a turn is in flight but its process is gone or going."""
        inv = self._invocation
        if inv is None or not self.is_active():
            return True
        return inv.proc.returncode is None and not inv.cancelled

    # -- Invocations ----------------------------------------------------------

    async def start_new(self, prompt: str) -> None:
        """New conversation."""
        await self._run([], prompt, session_id=None)

    async def continue_(self, prompt: str, session_id: str | None = None) -> None:
        """Continue the most recent conversation, or a specific one."""
        if session_id:
            await self.resume(session_id, prompt)
            return
        await self._run(["-c"], prompt, session_id=self._current_session_id)

    async def resume(self, session_id: str, prompt: str) -> None:
        await self._run(["-r", session_id], prompt, session_id=session_id)

    def build_args(self, mode_args: list[str], prompt: str) -> list[str]:
        args = [
            *mode_args,
            "-p",
            "--model", self.model,
            "--output-format", "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        args.extend(filter_extra_args(self.extra_args, mode_args))
        args.append(prompt)
        return args

    async def _run(self, mode_args: list[str], prompt: str, session_id: str | None) -> None:
        """Spawn claude and return once it writes something (or exits)."""
        if self.is_active():
            raise AlreadyProcessing()

        args = self.build_args(mode_args, prompt)
        self._state = EngineState.STARTING
        self._current_session_id = session_id

        try:
            proc = await self._spawn(args)
        except OSError as e:
            self._state = EngineState.IDLE
            logfire.error("Failed to spawn {command}: {error}", command=self.command[0], error=str(e))
            raise EngineSpawnError(" ".join(self.command), e) from e

        inv = _Invocation(args=args, proc=proc, session_id=session_id)
        self._invocation = inv
        logfire.info(
            "claude started (pid {pid}, mode {mode})",
            pid=proc.pid,
            mode=mode_args[0] if mode_args else "new",
        )

        inv.stderr_task = asyncio.create_task(self._drain_stderr(inv))
        inv.reader_task = asyncio.create_task(self._read_stdout(inv))
        await inv.first_output

    async def _spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        # Clear CLAUDECODE so we can spawn from within another claude process
        env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
        return await asyncio.create_subprocess_exec(
            *self.command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.working_directory,
            env=env,
        )

    def cancel(self) -> bool:
        """SIGTERM the running process; SIGKILL it if still alive after the grace window.

        Safe to call at any time. Returns True if a signal was sent.
        """
        inv = self._invocation
        if inv is None or inv.proc.returncode is not None:
            return False
        if inv.cancelled:
            return False

        inv.cancelled = True
        logfire.info("Cancelling claude (pid {pid})", pid=inv.proc.pid)
        try:
            inv.proc.terminate()
        except ProcessLookupError:
            return False
        inv.kill_task = asyncio.create_task(self._kill_after_grace(inv))
        return True

    async def wait_closed(self) -> None:
        """Wait for the current invocation's reader to finish."""
        inv = self._invocation
        if inv is None or inv.reader_task is None:
            return
        if inv.reader_task is asyncio.current_task():
            return
        await asyncio.shield(inv.reader_task)

    # -- Protocol helpers (static, unit-testable) -----------------------------

    @staticmethod
    def _parse_record(raw: dict) -> list[Event]:
        """Map one stream-json record to zero or more typed events.

        This is the single point where wire protocol maps to our type system.
        Records we don't model produce nothing.
        """
        msg_type = raw.get("type")
        session_id = raw.get("session_id")

        if msg_type == "system":
            if raw.get("subtype") == "init":
                return [
                    SessionInit(
                        raw=raw,
                        session_id=session_id or "",
                        model=raw.get("model", ""),
                        cwd=raw.get("cwd", ""),
                        tools=raw.get("tools") or [],
                        permission_mode=raw.get("permissionMode", ""),
                    )
                ]
            return []

        message = raw.get("message")
        if msg_type == "assistant" and isinstance(message, dict):
            events: list[Event] = []
            for block in message.get("content") or []:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type")
                if block_type == "text":
                    events.append(
                        AssistantText(
                            raw=raw,
                            text=block.get("text") or "",
                            message_id=message.get("id"),
                            session_id=session_id,
                            usage=message.get("usage"),
                        )
                    )
                elif block_type == "thinking":
                    events.append(
                        AssistantThinking(
                            raw=raw,
                            thinking=block.get("thinking") or "",
                            signature=block.get("signature"),
                            session_id=session_id,
                        )
                    )
                elif block_type == "tool_use":
                    name = block.get("name") or ""
                    events.append(
                        tool_event_type(name)(
                            raw=raw,
                            tool_name=name,
                            tool_id=block.get("id") or "",
                            input=block.get("input") or {},
                            session_id=session_id,
                        )
                    )
            return events

        if msg_type == "user" and isinstance(message, dict):
            content = message.get("content")
            if not isinstance(content, list):
                return []
            return [
                ToolResult(
                    raw=raw,
                    tool_use_id=block.get("tool_use_id") or "",
                    content=block.get("content"),
                    is_error=bool(block.get("is_error")),
                    session_id=session_id,
                )
                for block in content
                if isinstance(block, dict) and block.get("type") == "tool_result"
            ]

        if msg_type == "result":
            return [
                ExecutionResult(
                    raw=raw,
                    success=not raw.get("is_error", False),
                    result=raw.get("result"),
                    error=raw.get("error"),
                    cost=raw.get("cost_usd") or raw.get("total_cost_usd"),
                    duration_ms=raw.get("duration_ms"),
                    usage=raw.get("usage"),
                    session_id=session_id,
                )
            ]

        return []

    @staticmethod
    def _exit_events(inv: _Invocation) -> list[Event]:
        """What we synthesize once the process is gone."""
        events: list[Event] = []
        exit_code = inv.exit_code
        if not inv.cancelled:
            if should_emit_prompt_too_long(inv.prompt_too_long, exit_code):
                events.append(
                    PromptTooLong(
                        raw={},
                        message=inv.prompt_too_long_text or PromptTooLong.message,
                        session_id=inv.session_id,
                    )
                )
            elif exit_code != 0:
                events.append(
                    ProcessFailed(
                        raw={},
                        exit_code=exit_code,
                        stderr="\n".join(inv.stderr_tail),
                        session_id=inv.session_id,
                    )
                )
        events.append(
            ProcessComplete(
                raw={},
                success=exit_code == 0 and not inv.cancelled,
                exit_code=exit_code,
                cancelled=inv.cancelled,
                session_id=inv.session_id,
            )
        )
        return events

    # -- Reader tasks -----------------------------------------------------------

    async def _read_stdout(self, inv: _Invocation) -> None:
        """Read, frame, parse and deliver until EOF; then report the exit."""
        assert inv.proc.stdout
        buffer = LineBuffer()
        try:
            while True:
                chunk = await inv.proc.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                if not inv.first_output.done():
                    inv.first_output.set_result(None)
                    if self._invocation is inv:
                        self._state = EngineState.STREAMING
                for line in buffer.feed(chunk):
                    await self._handle_line(inv, line)
            for line in buffer.flush():
                await self._handle_line(inv, line)

            # stderr may still hold the overflow signature
            if inv.stderr_task:
                await inv.stderr_task
            inv.exit_code = await inv.proc.wait()
        finally:
            if not inv.first_output.done():
                inv.first_output.set_result(None)
            if inv.kill_task and not inv.kill_task.done():
                inv.kill_task.cancel()

        logfire.info(
            "claude exited (pid {pid}, code {exit_code}, cancelled {cancelled})",
            pid=inv.proc.pid,
            exit_code=inv.exit_code,
            cancelled=inv.cancelled,
        )
        if self._invocation is inv:
            clean = inv.exit_code == 0 and not inv.cancelled
            self._state = EngineState.COMPLETED if clean else EngineState.ERRORED

        for event in self._exit_events(inv):
            await self._emit(event)

    async def _handle_line(self, inv: _Invocation, line: str) -> None:
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as e:
            logfire.warning("Unparseable stream line: {error}", error=str(e), line=line[:200])
            await self._emit(ParseError(raw={}, line=line, error=str(e)))
            return
        if not isinstance(raw, dict):
            await self._emit(ParseError(raw={}, line=line, error="record is not a JSON object"))
            return

        for event in self._parse_record(raw):
            if isinstance(event, SessionInit) and event.session_id:
                inv.session_id = event.session_id
                if self._invocation is inv:
                    self._current_session_id = event.session_id
            elif isinstance(event, AssistantText) and self.signatures.matches(event.text):
                inv.prompt_too_long = True
                inv.prompt_too_long_text = inv.prompt_too_long_text or event.text
            await self._emit(event)

    async def _drain_stderr(self, inv: _Invocation) -> None:
        """Read stderr in the background so it doesn't block, watching for overflow."""
        assert inv.proc.stderr
        buffer = LineBuffer()
        while True:
            chunk = await inv.proc.stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                self._scan_stderr(inv, line)
        for line in buffer.flush():
            self._scan_stderr(inv, line)

    def _scan_stderr(self, inv: _Invocation, line: str) -> None:
        inv.stderr_tail.append(line)
        if self.signatures.matches(line):
            inv.prompt_too_long = True
            inv.prompt_too_long_text = inv.prompt_too_long_text or line
            logfire.warning("Context overflow signature on stderr: {line}", line=line)
        else:
            logfire.debug("claude stderr: {line}", line=line)

    async def _emit(self, event: Event) -> None:
        if self.on_event is None:
            return
        try:
            await self.on_event(event)
        except Exception as e:
            logfire.error(
                "Event handler failed on {event}: {error}",
                event=type(event).__name__,
                error=str(e),
            )

    async def _kill_after_grace(self, inv: _Invocation) -> None:
        try:
            await asyncio.wait_for(inv.proc.wait(), timeout=self.cancel_grace_seconds)
        except asyncio.TimeoutError:
            if inv.proc.returncode is None:
                logfire.warning("claude ignored SIGTERM, killing (pid {pid})", pid=inv.proc.pid)
                try:
                    inv.proc.kill()
                except ProcessLookupError:
                    pass
