"""console.py — Talk to the orchestrator from a terminal.

The smallest possible transport: one local user, stdin in, stdout out.
Useful for poking at a working directory without a chat bot in front.

Usage:
    session-relay --workdir ~/src/project
    python -m session_relay --model claude-opus-4-1-20250805

Slash commands handled here, not sent to claude:
    /cancel  /end  /new  /continue  /status
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Awaitable, Callable

from . import observability
from .config import CONFIG_FILE, JsonConfigStore, RelayConfig
from .errors import RelayError
from .events import (
    AssistantText,
    CompactFailed,
    CompactRecovered,
    CompactTriggered,
    Event,
    ExecutionError,
    ExecutionResult,
    MessageQueued,
    Notice,
    ParseError,
    SessionInit,
    ToolInvocation,
)
from .models import display_name
from .orchestrator import SessionOrchestrator
from .router import Router


LOCAL_USER = "local"


class ConsoleObserver:
    """Prints what claude says, one line per event worth seeing."""

    def __init__(self, write: Callable[[str], None] | None = None):
        self._write = write or print

    async def on_event(self, chat_id, event: Event) -> None:
        line = self.describe(event)
        if line:
            self._write(line)

    @staticmethod
    def describe(event: Event) -> str | None:
        if isinstance(event, SessionInit):
            return f"[session {event.session_id[:12]} | {display_name(event.model)}]"
        if isinstance(event, AssistantText):
            return event.text
        if isinstance(event, ToolInvocation):
            return f"[{event.tool_name}]"
        if isinstance(event, ExecutionResult):
            cost = f"${event.cost:.4f}" if event.cost else "$0"
            status = "done" if event.success else f"error: {event.error or event.result}"
            return f"[{status} | {cost}]"
        if isinstance(event, ParseError):
            return f"[unparseable output: {event.error}]"
        if isinstance(event, MessageQueued):
            return f"[queued #{event.position}]"
        if isinstance(event, ExecutionError):
            return f"[error: {event.message}]"
        if isinstance(event, CompactTriggered):
            return f"[context full ({event.reason}), compacting...]"
        if isinstance(event, CompactRecovered):
            return "[compacted, continuing]"
        if isinstance(event, CompactFailed):
            dropped = f" {len(event.dropped_prompts)} queued message(s) not sent." if event.dropped_prompts else ""
            return f"[compaction failed while {event.stage}: {event.detail}.{dropped} Use /new to start over.]"
        if isinstance(event, Notice):
            return f"[{type(event).__name__}]"
        return None


async def _stdin_reader() -> str | None:
    """Read a line from stdin asynchronously.

    Returns None on EOF (Ctrl-D).
    """
    loop = asyncio.get_running_loop()
    try:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return None  # EOF
        return line.rstrip("\n")
    except (EOFError, KeyboardInterrupt):
        return None


class HumanInput:
    """Reads lines and submits them as the local user."""

    def __init__(
        self,
        input_fn: Callable[[], Awaitable[str | None]] | None = None,
        user_id: int | str = LOCAL_USER,
        write: Callable[[str], None] | None = None,
    ):
        self._input_fn = input_fn or _stdin_reader
        self.user_id = user_id
        self._write = write or print

    async def run(self, orchestrator: SessionOrchestrator) -> None:
        """Run the input loop until EOF."""
        while True:
            content = await self._input_fn()
            if content is None:
                break  # EOF
            content = content.strip()
            if not content:
                continue
            if content.startswith("/") and await self._command(orchestrator, content):
                continue
            try:
                await orchestrator.submit_prompt(self.user_id, self.user_id, content)
            except RelayError as e:
                self._write(f"[could not start claude: {e}]")

    async def _command(self, orchestrator: SessionOrchestrator, command: str) -> bool:
        """Handle a local slash command. False means pass it through to claude."""
        name = command.split()[0]
        if name == "/cancel":
            await orchestrator.cancel_session(self.user_id)
        elif name == "/end":
            await orchestrator.end_session(self.user_id)
        elif name == "/new":
            await orchestrator.start_new_session(self.user_id, self.user_id)
        elif name == "/continue":
            if not await orchestrator.continue_after_compact(self.user_id):
                self._write("[nothing to continue]")
        elif name == "/status":
            self._write(self._status(orchestrator))
        else:
            return False
        return True

    def _status(self, orchestrator: SessionOrchestrator) -> str:
        session = orchestrator.get_session(self.user_id)
        if session is None:
            return "[no session]"
        breakdown = orchestrator.context_breakdown(self.user_id)
        health = orchestrator.check_health(self.user_id)
        return (
            f"[{session.external_session_id or 'not started'} | "
            f"{session.message_count} messages | "
            f"{session.token_usage.total_tokens} tokens | "
            f"context {breakdown.usage_percentage:.1f}% | "
            f"{'healthy' if health.healthy else ', '.join(health.issues)}]"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="session-relay", description="Chat with claude from the terminal.")
    parser.add_argument("--workdir", help="Project directory claude runs in")
    parser.add_argument("--model", help="Model id")
    parser.add_argument("--config", default=CONFIG_FILE, help="Path to the JSON settings file")
    parser.add_argument("--no-validate", action="store_true", help="Skip the resume probe after compaction")
    parser.add_argument("--debug", action="store_true", help="Log to the console")
    return parser


async def run(args: argparse.Namespace) -> None:
    config = RelayConfig.from_env()
    if args.workdir:
        config.working_directory = args.workdir
    if args.model:
        config.model = args.model
    if args.no_validate:
        config.validate_after_compact = False

    orchestrator = SessionOrchestrator(
        config=config,
        store=JsonConfigStore(args.config),
        router=Router(observers=[ConsoleObserver()]),
    )
    try:
        await HumanInput().run(orchestrator)
    finally:
        await orchestrator.shutdown()


def main() -> None:
    args = build_parser().parse_args()
    observability.configure(debug=args.debug)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass
