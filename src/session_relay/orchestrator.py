"""orchestrator.py — Many users, one claude each.

The SessionOrchestrator is the main API surface for a chat front end. It
composes:
  - Engine: one per user session, runs claude turns
  - PendingQueues: prompts that arrived while the user's turn was running
  - Router: fans events and notices out to the transport's observers
  - TranscriptStore / TokenLedger / ContextEstimator: token accounting
  - Compactor: recovery when the context fills up

Flow for one prompt:

    submit_prompt(user, chat, text)
      busy?  → queue it, MessageQueued, done
      idle   → start_new | resume(stored id) | continue_, per the user's state
    engine events → _on_engine_event
      usage  → counters, maybe auto-compact
      every event → router
      ExecutionResult / ProcessComplete → next queued prompt, if any

Usage:
    orchestrator = SessionOrchestrator(RelayConfig.from_env(), JsonConfigStore(path), Router([bot]))
    await orchestrator.submit_prompt(user_id, chat_id, "Hello!")
    ...
    await orchestrator.shutdown()
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import logfire
import pendulum

from .compact import Compactor, CompactState
from .config import (
    ConfigStore,
    MemoryConfigStore,
    RelayConfig,
    always_new_session,
    clear_project_session,
    load_project_session,
    save_project_session,
)
from .engine import Engine
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
    NewSessionStarted,
    NothingToCancel,
    ProcessFailed,
    PromptTooLong,
    SessionCancelled,
    SessionEnded,
    SessionInit,
    TERMINAL_EVENTS,
)
from .history import HistoryBook, SessionHistory
from .models import is_valid_model
from .queue import PendingMessage, PendingQueues
from .router import Router
from .session import Session
from .tokens import ContextBreakdown, ContextEstimator, TokenLedger, TokenUsage
from .transcripts import TranscriptInfo, TranscriptStore, sessions_dir_for


CONTINUE_PROMPT = "continue"

EngineFactory = Callable[[str], Engine]


class SubmitOutcome(Enum):
    QUEUED = "queued"
    STARTED = "started"


@dataclass
class HealthReport:
    """Advisory. Nothing is cancelled because of it."""

    user_id: int | str
    healthy: bool
    responsive: bool
    seconds_since_activity: float
    issues: list[str] = field(default_factory=list)
    checked_at: pendulum.DateTime = field(default_factory=lambda: pendulum.now("UTC"))


class SessionOrchestrator:
    """Maps users to sessions, sessions to claude turns."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        store: ConfigStore | None = None,
        router: Router | None = None,
        transcripts: TranscriptStore | None = None,
        estimator: ContextEstimator | None = None,
        compactor: Compactor | None = None,
        engine_factory: EngineFactory | None = None,
    ):
        self.config = config or RelayConfig.from_env()
        self.store = store if store is not None else MemoryConfigStore()
        self.router = router or Router()
        self.transcripts = transcripts or TranscriptStore(
            self.config.sessions_dir or sessions_dir_for(self.config.working_directory)
        )
        self.ledger = TokenLedger(self.transcripts)
        self.estimator = estimator or ContextEstimator(self.config.working_directory, self.transcripts)
        self.compactor = compactor or Compactor(
            command=self.config.command,
            working_directory=self.config.working_directory,
            model=self.config.model,
            compact_timeout=self.config.compact_timeout_seconds,
            validate_timeout=self.config.validate_timeout_seconds,
        )
        self._engine_factory = engine_factory or self._default_engine
        self.history = HistoryBook(self.config.history_capacity)
        self.pending = PendingQueues()

        self._sessions: dict[int | str, Session] = {}
        self._user_models: dict[int | str, str] = {}
        self._recoveries: dict[int | str, asyncio.Task] = {}
        self._closing: dict[int | str, Session] = {}
        self._failed_compactions: set[str] = set()

    @property
    def project(self) -> str:
        return self.config.working_directory

    def _default_engine(self, model: str) -> Engine:
        return Engine(
            command=self.config.command,
            model=model,
            working_directory=self.config.working_directory,
            extra_args=self.config.extra_args,
            cancel_grace_seconds=self.config.cancel_grace_seconds,
        )

    # -- Lookup ---------------------------------------------------------------

    def get_session(self, user_id: int | str) -> Session | None:
        return self._sessions.get(user_id)

    def model_for(self, user_id: int | str) -> str:
        return self._user_models.get(user_id, self.config.model)

    def recovery_task(self, user_id: int | str) -> asyncio.Task | None:
        """The running auto-compact recovery for this user, if any."""
        return self._recoveries.get(user_id)

    def is_busy(self, user_id: int | str) -> bool:
        if user_id in self._recoveries or user_id in self._closing:
            return True
        session = self._sessions.get(user_id)
        return session is not None and session.engine.is_active()

    # -- Sessions -------------------------------------------------------------

    def create_session(self, user_id: int | str, chat_id: int | str | None) -> Session:
        """A fresh Session for the user, picking up where the project left off."""
        engine = self._engine_factory(self.model_for(user_id))
        session = Session(user_id=user_id, chat_id=chat_id, engine=engine)
        engine.on_event = functools.partial(self._on_engine_event, session)

        stored = load_project_session(self.store, self.project, user_id)
        if stored:
            session.external_session_id = stored
            session.is_continuation = True
            usage = self.transcripts.token_usage(stored)
            if usage is not None:
                session.token_usage = usage
            cumulative = self.ledger.cumulative(stored)
            logfire.info(
                "Session for user {user_id} continues {session_id} ({tokens} tokens in chain)",
                user_id=user_id,
                session_id=stored,
                tokens=cumulative.total_tokens,
            )
        else:
            logfire.info("New session for user {user_id}", user_id=user_id)

        self._sessions[user_id] = session
        return session

    async def submit_prompt(self, user_id: int | str, chat_id: int | str | None, prompt: str) -> SubmitOutcome:
        """Run a prompt now, or queue it behind the one in flight.

        Returns once claude starts answering, not when it finishes.
        Raises EngineSpawnError if claude can't be started (the chat gets an
        ExecutionError notice first).
        """
        if self.is_busy(user_id):
            position = self.pending.put(user_id, PendingMessage(content=prompt, chat_id=chat_id))
            logfire.info("Queued prompt for user {user_id} at position {position}", user_id=user_id, position=position)
            await self._notify(chat_id, MessageQueued(user_id=user_id, content=prompt, position=position))
            return SubmitOutcome.QUEUED

        session = self._sessions.get(user_id) or self.create_session(user_id, chat_id)
        session.chat_id = chat_id
        await self._start_turn(session, prompt)
        return SubmitOutcome.STARTED

    def _choose_mode(self, session: Session) -> tuple[str, str | None]:
        """("new" | "resume" | "continue", session id)."""
        if always_new_session(self.store):
            return "new", None
        stored = load_project_session(self.store, self.project, session.user_id)
        if stored:
            return "resume", stored
        if session.message_count == 0:
            return "new", None
        return "continue", None

    async def _start_turn(self, session: Session, prompt: str, resume_id: str | None = None) -> None:
        engine = session.engine
        if resume_id:
            mode, session_id = "resume", resume_id
        else:
            mode, session_id = self._choose_mode(session)

        session.begin_turn(prompt)
        session.message_count += 1
        logfire.info(
            "Turn {turn} for user {user_id} ({mode})",
            turn=session.message_count,
            user_id=session.user_id,
            mode=mode,
            session_id=session_id,
        )
        try:
            if mode == "new":
                await engine.start_new(prompt)
            elif mode == "resume":
                await engine.resume(session_id, prompt)
            else:
                await engine.continue_(prompt)
        except RelayError as e:
            session.message_count -= 1
            session.session_start_time = None
            logfire.error("Turn failed to start for user {user_id}: {error}", user_id=session.user_id, error=str(e))
            await self._notify(session.chat_id, ExecutionError(user_id=session.user_id, message=str(e)))
            raise

    def _discard(self, session: Session) -> None:
        """Push the session's id into history and forget the object."""
        self.history.record(session.user_id, session.external_session_id)
        if self._sessions.get(session.user_id) is session:
            del self._sessions[session.user_id]

    async def _retire(self, session: Session) -> None:
        """Discard the session and wait for its process to exit.

        The user counts as busy until then, so new prompts queue behind it.
        """
        user_id = session.user_id
        self._discard(session)
        session.engine.cancel()
        self._closing[user_id] = session
        try:
            await session.engine.wait_closed()
        finally:
            if self._closing.get(user_id) is session:
                del self._closing[user_id]

    async def cancel_session(self, user_id: int | str) -> bool:
        """Stop the running turn and drop the session. Queued prompts then run."""
        session = self._sessions.get(user_id)
        if session is None or not session.engine.is_active():
            chat_id = session.chat_id if session else None
            await self._notify(chat_id, NothingToCancel(user_id=user_id))
            return False

        await self._retire(session)
        logfire.info("Cancelled session for user {user_id}", user_id=user_id)
        await self._notify(
            session.chat_id, SessionCancelled(user_id=user_id, session_id=session.external_session_id)
        )
        await self._drain_next(user_id)
        return True

    async def end_session(self, user_id: int | str) -> bool:
        """End the user's session and forget the project record. Queued prompts then run."""
        session = self._sessions.get(user_id)
        if session is None:
            return False

        uptime = int(session.uptime.total_seconds())
        clear_project_session(self.store, self.project, user_id)
        await self._retire(session)
        logfire.info(
            "Ended session {session_id} for user {user_id} after {messages} messages",
            session_id=session.external_session_id,
            user_id=user_id,
            messages=session.message_count,
        )
        await self._notify(
            session.chat_id,
            SessionEnded(
                user_id=user_id,
                session_id=session.external_session_id,
                message_count=session.message_count,
                uptime_seconds=uptime,
            ),
        )
        await self._drain_next(user_id)
        return True

    async def start_new_session(self, user_id: int | str, chat_id: int | str | None) -> Session:
        """Drop the current session; the next prompt starts a new conversation."""
        previous = self._sessions.get(user_id)
        previous_id = previous.external_session_id if previous else None
        clear_project_session(self.store, self.project, user_id)
        if previous is not None:
            await self._retire(previous)

        session = self.create_session(user_id, chat_id)
        await self._notify(chat_id, NewSessionStarted(user_id=user_id, previous_session_id=previous_id))
        await self._drain_next(user_id)
        return session

    async def continue_after_compact(self, user_id: int | str) -> bool:
        """Send a manual "continue" turn to a recovered session."""
        session = self._sessions.get(user_id)
        if session is None or session.external_session_id is None or self.is_busy(user_id):
            return False
        await self._start_turn(session, CONTINUE_PROMPT, resume_id=session.external_session_id)
        return True

    def set_user_model(self, user_id: int | str, model: str) -> bool:
        """Pick the model for this user's future turns."""
        if not is_valid_model(model):
            return False
        self._user_models[user_id] = model
        session = self._sessions.get(user_id)
        if session is not None:
            session.engine.model = model
        return True

    # -- Engine events --------------------------------------------------------

    async def _on_engine_event(self, session: Session, event: Event) -> None:
        """Bookkeeping, then forward, then follow-ups. One event at a time."""
        session.touch()
        usage_changed = False

        if isinstance(event, SessionInit) and event.session_id:
            session.external_session_id = event.session_id
            # A cancelled turn can still report init; it mustn't overwrite the record
            if self._sessions.get(session.user_id) is session:
                save_project_session(
                    self.store, self.project, session.user_id, event.session_id, session.engine.model
                )
            self.history.for_user(session.user_id).touch(event.session_id)

        elif isinstance(event, AssistantText) and event.usage:
            # One assistant message can carry several text blocks, all with the same usage
            if event.message_id is None or event.message_id not in session.counted_message_ids:
                if event.message_id is not None:
                    session.counted_message_ids.add(event.message_id)
                usage_changed = session.token_usage.add(event.usage)

        elif isinstance(event, ExecutionResult):
            usage_changed = session.token_usage.add(event.usage, event.cost)
            duration = session.end_turn()
            if session.external_session_id:
                session.title = self.transcripts.summary(session.external_session_id) or session.title
            logfire.info(
                "Turn finished for user {user_id}: success {success}, {tokens} tokens so far",
                user_id=session.user_id,
                success=event.success,
                tokens=session.token_usage.total_tokens,
                duration=duration.total_seconds() if duration else None,
            )

        await self.router.route(session.chat_id, event)

        if usage_changed:
            self.check_auto_compact(session)

        if isinstance(event, PromptTooLong):
            await self._on_prompt_too_long(session, event)
        elif isinstance(event, ProcessFailed):
            detail = event.stderr.strip().splitlines()[-1] if event.stderr.strip() else ""
            message = f"claude exited with code {event.exit_code}"
            await self._notify(session.chat_id, ExecutionError(
                user_id=session.user_id,
                message=f"{message}: {detail}" if detail else message,
            ))

        if isinstance(event, TERMINAL_EVENTS):
            await self._drain_queue(session)

    async def _drain_queue(self, session: Session) -> None:
        """Start the next queued prompt, if this session is still the one to run it."""
        user_id = session.user_id
        if self._sessions.get(user_id) is not session or session.engine.is_active():
            return
        await self._drain_next(user_id)

    async def _drain_next(self, user_id: int | str) -> None:
        if self.is_busy(user_id):
            return
        message = self.pending.pop(user_id)
        if message is None:
            return
        try:
            await self.submit_prompt(user_id, message.chat_id, message.content)
        except RelayError as e:
            logfire.error("Queued prompt for user {user_id} failed: {error}", user_id=user_id, error=str(e))

    # -- Token accounting -----------------------------------------------------

    def calculate_cumulative_tokens(self, session_id: str | None) -> TokenUsage:
        """Usage summed over the session and everything it was resumed from."""
        return self.ledger.cumulative(session_id)

    def context_breakdown(self, user_id: int | str) -> ContextBreakdown | None:
        session = self._sessions.get(user_id)
        if session is None:
            return None
        return self.estimator.breakdown(
            session.external_session_id, session.token_usage.total_tokens, session.engine.model
        )

    def check_auto_compact(self, session: Session) -> bool:
        """Trigger compaction if the context is nearly full. True if it triggered."""
        if session.compact_state is not CompactState.NORMAL:
            return False
        if session.token_usage.transaction_count == 0:
            return False
        if self._sessions.get(session.user_id) is not session:
            return False

        breakdown = self.estimator.breakdown(
            session.external_session_id, session.token_usage.total_tokens, session.engine.model
        )
        percentage = breakdown.usage_percentage
        if percentage < self.config.compact_threshold:
            return False

        logfire.warning(
            "Context at {percentage:.1f}% for user {user_id}, compacting",
            percentage=percentage,
            user_id=session.user_id,
        )
        self._trigger_compact(session, "threshold", percentage)
        return True

    # -- Auto-compact ---------------------------------------------------------

    async def _on_prompt_too_long(self, session: Session, event: PromptTooLong) -> None:
        session_id = session.external_session_id or event.session_id
        if session_id in self._failed_compactions:
            await self._notify(session.chat_id, CompactFailed(
                user_id=session.user_id,
                session_id=session_id,
                stage="compacting",
                detail="this session already failed to compact",
            ))
            return
        if self._sessions.get(session.user_id) is not session:
            return
        if session.compact_state is CompactState.RECOVERED:
            if session.external_session_id is None:
                session.external_session_id = event.session_id
            await self._compact_failed(session, "resuming", "context is still too long after compaction")
            return
        if session.compact_state is not CompactState.NORMAL:
            return
        if session.external_session_id is None:
            session.external_session_id = event.session_id
        self._trigger_compact(session, "prompt-too-long", None)

    def _trigger_compact(self, session: Session, reason: str, percentage: float | None) -> None:
        """Enter TRIGGERED: stop the turn, retire the session, start recovery."""
        session.compact_state = CompactState.TRIGGERED
        session.engine.cancel()
        self._discard(session)
        task = asyncio.create_task(self._recover(session, reason, percentage))
        self._recoveries[session.user_id] = task

        def _done(t: asyncio.Task, user_id=session.user_id) -> None:
            if self._recoveries.get(user_id) is t:
                del self._recoveries[user_id]

        task.add_done_callback(_done)

    async def _recover(self, session: Session, reason: str, percentage: float | None) -> None:
        user_id = session.user_id
        session_id = session.external_session_id
        with logfire.span("auto-compact {session_id}", session_id=session_id, user_id=user_id, reason=reason):
            await self._notify(session.chat_id, CompactTriggered(
                user_id=user_id,
                reason=reason,
                session_id=session_id,
                usage_percentage=percentage,
            ))
            await session.engine.wait_closed()

            if not session_id:
                await self._compact_failed(session, "triggered", "no session id to compact")
                return

            session.compact_state = CompactState.COMPACTING
            result = await self.compactor.compact(session_id)
            if not result:
                await self._compact_failed(session, "compacting", result.detail)
                return

            if self.config.validate_after_compact:
                session.compact_state = CompactState.VALIDATING
                result = await self.compactor.validate(session_id, session.engine.model)
                if not result:
                    await self._compact_failed(session, "validating", result.detail)
                    return

            session.compact_state = CompactState.RECOVERED
            recovered = self.create_session(user_id, session.chat_id)
            recovered.compact_state = CompactState.RECOVERED
            recovered.external_session_id = session_id
            recovered.message_count = session.message_count
            save_project_session(self.store, self.project, user_id, session_id, recovered.engine.model)
            logfire.info("Recovered session {session_id} for user {user_id}", session_id=session_id, user_id=user_id)
            await self._notify(recovered.chat_id, CompactRecovered(user_id=user_id, session_id=session_id))

        # Out of the recovery task's bookkeeping: the continue turn is an ordinary turn
        self._recoveries.pop(user_id, None)
        try:
            await self._start_turn(recovered, CONTINUE_PROMPT, resume_id=session_id)
        except RelayError:
            await self._drain_next(user_id)

    async def _compact_failed(self, session: Session, stage: str, detail: str) -> None:
        session.compact_state = CompactState.FAILED
        if session.external_session_id:
            self._failed_compactions.add(session.external_session_id)
        dropped = self.pending.clear(session.user_id)
        logfire.error(
            "Auto-compact failed for user {user_id} while {stage}: {detail}",
            user_id=session.user_id,
            stage=stage,
            detail=detail,
            dropped_prompts=len(dropped),
        )
        await self._notify(session.chat_id, CompactFailed(
            user_id=session.user_id,
            session_id=session.external_session_id,
            stage=stage,
            detail=detail,
            dropped_prompts=[message.content for message in dropped],
        ))

    # -- Health and status ----------------------------------------------------

    def check_health(self, user_id: int | str) -> HealthReport | None:
        session = self._sessions.get(user_id)
        if session is None:
            return None

        idle_for = session.seconds_since_activity()
        responsive = session.engine.is_responsive()
        issues = []
        if idle_for > self.config.stale_after_seconds:
            issues.append(f"no activity for {idle_for:.0f}s")
        if not responsive:
            issues.append("claude process is not responding")

        session.is_healthy = not issues
        session.last_health_check = pendulum.now("UTC")
        if issues:
            logfire.warning("Session for user {user_id} unhealthy: {issues}", user_id=user_id, issues=issues)
        return HealthReport(
            user_id=user_id,
            healthy=session.is_healthy,
            responsive=responsive,
            seconds_since_activity=idle_for,
            issues=issues,
            checked_at=session.last_health_check,
        )

    def session_history(self, user_id: int | str) -> SessionHistory:
        return self.history.for_user(user_id)

    def list_sessions(self, user_id: int | str) -> list[TranscriptInfo]:
        """The project's transcripts, this user's recent ones first."""
        return self.transcripts.list_sessions(self.history.for_user(user_id).access_times)

    def stats(self) -> dict:
        return {
            "active_sessions": len(self._sessions),
            "processing": sum(1 for s in self._sessions.values() if s.engine.is_active()),
            "queued_prompts": self.pending.total,
            "recovering": len(self._recoveries),
            "cached_chains": len(self.ledger),
        }

    async def shutdown(self) -> None:
        """Stop every running turn. Recoveries are allowed to finish."""
        with logfire.span("shutdown", sessions=len(self._sessions)):
            if self._recoveries:
                await asyncio.gather(*self._recoveries.values(), return_exceptions=True)
            sessions = list(self._sessions.values())
            for session in sessions:
                session.engine.cancel()
            for session in sessions:
                await session.engine.wait_closed()
            self._sessions.clear()

    # -- Notices --------------------------------------------------------------

    async def _notify(self, chat_id: int | str | None, notice: Event) -> None:
        await self.router.route(chat_id, notice)
