"""Tests for console.py — the terminal transport."""

import pytest

from session_relay.console import ConsoleObserver, HumanInput, build_parser
from session_relay.errors import EngineSpawnError
from session_relay.events import (
    AssistantText,
    BashCommand,
    CompactFailed,
    ExecutionResult,
    MessageQueued,
    ProcessComplete,
    SessionCancelled,
    SessionInit,
)


# -- Mock orchestrator for testing --------------------------------------------


class MockOrchestrator:
    """Records what the console asks for."""

    def __init__(self, fail_submit: bool = False):
        self.prompts: list[tuple] = []
        self.commands: list[str] = []
        self.fail_submit = fail_submit

    async def submit_prompt(self, user_id, chat_id, prompt):
        if self.fail_submit:
            raise EngineSpawnError("claude", FileNotFoundError(2, "No such file or directory"))
        self.prompts.append((user_id, chat_id, prompt))

    async def cancel_session(self, user_id):
        self.commands.append("cancel")
        return True

    async def end_session(self, user_id):
        self.commands.append("end")
        return True

    async def start_new_session(self, user_id, chat_id):
        self.commands.append("new")

    async def continue_after_compact(self, user_id):
        self.commands.append("continue")
        return False

    def get_session(self, user_id):
        return None


def scripted(*lines):
    inputs = iter([*lines, None])

    async def fake_input():
        return next(inputs)

    return fake_input


# -- Tests --------------------------------------------------------------------


class TestHumanInput:
    async def test_sends_input_to_orchestrator(self):
        orchestrator = MockOrchestrator()
        await HumanInput(input_fn=scripted("hello", "world")).run(orchestrator)
        assert orchestrator.prompts == [("local", "local", "hello"), ("local", "local", "world")]

    async def test_skips_empty_lines(self):
        orchestrator = MockOrchestrator()
        await HumanInput(input_fn=scripted("hello", "", "  ", "world")).run(orchestrator)
        assert len(orchestrator.prompts) == 2

    async def test_stops_on_eof(self):
        orchestrator = MockOrchestrator()
        await HumanInput(input_fn=scripted()).run(orchestrator)
        assert orchestrator.prompts == []

    async def test_custom_user(self):
        orchestrator = MockOrchestrator()
        await HumanInput(input_fn=scripted("hi"), user_id=42).run(orchestrator)
        assert orchestrator.prompts == [(42, 42, "hi")]

    async def test_slash_commands_are_local(self):
        orchestrator = MockOrchestrator()
        out = []
        human = HumanInput(input_fn=scripted("/cancel", "/end", "/new", "/continue", "/status"), write=out.append)
        await human.run(orchestrator)
        assert orchestrator.commands == ["cancel", "end", "new", "continue"]
        assert orchestrator.prompts == []
        assert out == ["[nothing to continue]", "[no session]"]

    async def test_unknown_slash_command_goes_to_claude(self):
        orchestrator = MockOrchestrator()
        await HumanInput(input_fn=scripted("/compact")).run(orchestrator)
        assert orchestrator.prompts == [("local", "local", "/compact")]

    async def test_spawn_failure_is_reported(self):
        out = []
        human = HumanInput(input_fn=scripted("hi", "again"), write=out.append)
        await human.run(MockOrchestrator(fail_submit=True))
        assert len(out) == 2
        assert out[0].startswith("[could not start claude:")


class TestConsoleObserver:
    @pytest.mark.parametrize(
        "event, expected",
        [
            (AssistantText(text="Hello!"), "Hello!"),
            (BashCommand(tool_name="Bash"), "[Bash]"),
            (ExecutionResult(cost=0.0042), "[done | $0.0042]"),
            (ExecutionResult(success=False, error="boom"), "[error: boom | $0]"),
            (MessageQueued(position=2), "[queued #2]"),
            (CompactFailed(stage="compacting", detail="x"),
             "[compaction failed while compacting: x. Use /new to start over.]"),
            (CompactFailed(stage="compacting", detail="x", dropped_prompts=["a", "b"]),
             "[compaction failed while compacting: x. 2 queued message(s) not sent. Use /new to start over.]"),
            (SessionCancelled(), "[SessionCancelled]"),
            (ProcessComplete(), None),
        ],
    )
    def test_describe(self, event, expected):
        assert ConsoleObserver.describe(event) == expected

    def test_init_shows_model_name(self):
        line = ConsoleObserver.describe(SessionInit(session_id="S1", model="claude-sonnet-4-20250514"))
        assert line == "[session S1 | Claude Sonnet 4 (Latest)]"

    async def test_writes_lines(self):
        out = []
        observer = ConsoleObserver(write=out.append)
        await observer.on_event(1, AssistantText(text="hi"))
        await observer.on_event(1, ProcessComplete())
        assert out == ["hi"]


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.workdir is None
        assert args.model is None
        assert not args.no_validate
        assert not args.debug

    def test_flags(self):
        args = build_parser().parse_args(["--workdir", "/p", "--model", "m", "--no-validate", "--debug"])
        assert (args.workdir, args.model, args.no_validate, args.debug) == ("/p", "m", True, True)
