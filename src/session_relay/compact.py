"""compact.py — Shrinking a session that no longer fits.

When a session's context is (nearly) full, we ask claude to compact it in
place and then check that the result can actually be resumed:

    NORMAL → TRIGGERED → COMPACTING → VALIDATING → RECOVERED
                              │            │
                              └────────────┴──→ FAILED

Both steps are one-shot subprocesses against the session's transcript.
Neither can be cancelled; they run to completion or to their timeout,
because killing claude halfway through /compact can leave a transcript
that nothing will resume.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from enum import Enum

import logfire

from .config import CLAUDE_BIN, COMPACT_TIMEOUT_SECONDS, VALIDATE_TIMEOUT_SECONDS
from .models import DEFAULT_MODEL


VALIDATION_PROMPT = "echo 'validation test'"
STILL_TOO_LONG = "Prompt is too long"


class CompactState(Enum):
    NORMAL = "normal"
    TRIGGERED = "triggered"
    COMPACTING = "compacting"
    VALIDATING = "validating"
    RECOVERED = "recovered"
    FAILED = "failed"


IN_PROGRESS_STATES = (CompactState.TRIGGERED, CompactState.COMPACTING, CompactState.VALIDATING)


@dataclass
class StepResult:
    """How one compaction step went. detail is for humans."""

    ok: bool
    detail: str = ""
    exit_code: int | None = None

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class _Completed:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


class Compactor:
    """Runs `/compact` and the resume probe for a session id."""

    def __init__(
        self,
        command: list[str] | None = None,
        working_directory: str | None = None,
        model: str = DEFAULT_MODEL,
        compact_timeout: float = COMPACT_TIMEOUT_SECONDS,
        validate_timeout: float = VALIDATE_TIMEOUT_SECONDS,
        validation_prompt: str = VALIDATION_PROMPT,
    ):
        self.command = list(command) if command else [CLAUDE_BIN]
        self.working_directory = working_directory
        self.model = model
        self.compact_timeout = compact_timeout
        self.validate_timeout = validate_timeout
        self.validation_prompt = validation_prompt

    def compact_args(self, session_id: str) -> list[str]:
        return ["-r", session_id, "/compact"]

    def validate_args(self, session_id: str, model: str | None = None) -> list[str]:
        return [
            "-r", session_id,
            "-p",
            "--model", model or self.model,
            "--output-format", "stream-json",
            "--verbose",
            self.validation_prompt,
        ]

    async def compact(self, session_id: str) -> StepResult:
        """`claude -r <id> /compact`. Succeeds on exit code 0."""
        with logfire.span("compact {session_id}", session_id=session_id):
            try:
                done = await self._run(self.compact_args(session_id), self.compact_timeout)
            except OSError as e:
                logfire.error("Compact spawn failed: {error}", error=str(e))
                return StepResult(False, f"spawn failed: {e}")

            if done.timed_out:
                logfire.error("Compact timed out after {timeout}s", timeout=self.compact_timeout)
                return StepResult(False, f"timed out after {self.compact_timeout:.0f}s")
            if done.exit_code != 0:
                logfire.error(
                    "Compact exited {exit_code}: {stderr}",
                    exit_code=done.exit_code,
                    stderr=done.stderr[-500:],
                )
                return StepResult(False, done.stderr.strip()[-500:] or f"exit code {done.exit_code}", done.exit_code)

            logfire.info("Compact completed for {session_id}", session_id=session_id)
            return StepResult(True, exit_code=0)

    async def validate(self, session_id: str, model: str | None = None) -> StepResult:
        """Resume the session with a throwaway prompt and see if claude answers.

        Resumable if the probe exits 0, or if it produced an assistant record
        and stderr doesn't say the prompt is still too long. claude sometimes
        exits 1 on a session that works fine.
        """
        with logfire.span("validate {session_id}", session_id=session_id):
            try:
                done = await self._run(self.validate_args(session_id, model), self.validate_timeout)
            except OSError as e:
                logfire.error("Validation spawn failed: {error}", error=str(e))
                return StepResult(False, f"spawn failed: {e}")

            if done.timed_out:
                logfire.error("Validation timed out after {timeout}s", timeout=self.validate_timeout)
                return StepResult(False, f"timed out after {self.validate_timeout:.0f}s")

            has_response = '"type":"assistant"' in done.stdout.replace(" ", "") or "validation test" in done.stdout
            ok = done.exit_code == 0 or (has_response and STILL_TOO_LONG not in done.stderr)
            logfire.info(
                "Validation for {session_id}: {ok} (code {exit_code}, response {has_response})",
                session_id=session_id,
                ok=ok,
                exit_code=done.exit_code,
                has_response=has_response,
            )
            if ok:
                return StepResult(True, exit_code=done.exit_code)
            return StepResult(False, done.stderr.strip()[-500:] or f"exit code {done.exit_code}", done.exit_code)

    async def _run(self, args: list[str], timeout: float) -> _Completed:
        env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
        proc = await asyncio.create_subprocess_exec(
            *self.command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.working_directory,
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            return _Completed(proc.returncode, "", "", timed_out=True)
        return _Completed(
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
