"""
Streaming session coordinator.

Owns at most one generation per conversation. ``submit()`` supersedes any
active session and waits for its cleanup to finish before the next one starts;
``stop()`` requests a cooperative cancellation. Whatever ends a session
(natural end, stop marker, guard, cancellation, or engine error), finalization
runs exactly once: the refresh ticker is cancelled, the engine stream is closed,
statistics are computed, the conversation store and UI sink are updated, and
the coordinator returns to ``IDLE``.

Example:
    coordinator = StreamingSessionCoordinator(engine, store, model_id="gemma3-1b")
    task = await coordinator.submit("Summarize the release notes")
    outcome = await task
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from .adapters import InferenceEngine, SamplingParams
from .budget import ContextBudgeter
from .catalog import ModelCatalog
from .conversation import Conversation, ConversationStore
from .exceptions import ConfigurationError
from .guard import RepetitionGuard, Stop
from .outcomes import (
    CancelledBySupersession,
    CancelledByUser,
    Completed,
    Failed,
    SessionState,
    StoppedByGuard,
    StreamOutcome,
)
from .scanner import StopSequenceScanner
from .settings import StreamSettings
from .sinks import NullSink, SessionRecord, UISink
from .stats import TokenStats, calculate_token_stats

logger = logging.getLogger("silicon_stream.coordinator")


class CancelReason(str, enum.Enum):
    USER = "user"
    NON_USER = "non_user"
    SUPERSEDED = "superseded"


@dataclass
class Session:
    """Mutable state of one generation; touched only by its coordinator."""

    conversation_id: str
    prompt: str
    start_time: float
    response_token_budget: int = 0
    text: str = ""
    token_count: int = 0
    first_token_time: float | None = None
    cancel_reason: CancelReason | None = None
    user_initiated_stop: bool = False
    state: SessionState = SessionState.STARTING
    running: bool = False
    finalizing: bool = False
    outcome: StreamOutcome | None = None
    task: asyncio.Task | None = field(default=None, repr=False)


def _sanitize(sample: str) -> str:
    return sample.replace("\n", "\\n").replace('"', '\\"')


class StreamingSessionCoordinator:
    def __init__(
        self,
        engine: InferenceEngine,
        store: ConversationStore,
        *,
        model_id: str | None = None,
        budgeter: ContextBudgeter | None = None,
        catalog: ModelCatalog | None = None,
        sink: UISink | None = None,
        settings: StreamSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        conversation_id: str | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.settings = settings or StreamSettings()
        self.model_id = model_id or self.settings.model_id
        if catalog is None:
            catalog = budgeter.catalog if budgeter is not None else ModelCatalog()
        self.catalog = catalog
        self.budgeter = budgeter or ContextBudgeter(catalog)
        self.sink: UISink = sink or NullSink()
        self.conversation_id = conversation_id or uuid.uuid4().hex
        self._clock = clock

        self.state = SessionState.IDLE
        self.session: Session | None = None
        self.display_text = ""
        self.last_outcome: StreamOutcome | None = None
        self._submit_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None

    # -- public API ---------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.session is not None

    @property
    def visible_text(self) -> str:
        """Text the UI should currently show for the latest response."""
        if self.session is not None:
            return self.session.text
        return self.display_text

    async def submit(self, prompt: str) -> asyncio.Task | None:
        """Start a new session for *prompt*, superseding any active one.

        Returns the session task (its result is the ``StreamOutcome``), or
        ``None`` when the prompt is empty after stripping.
        """
        text = (prompt or "").strip()
        if not text:
            return None

        async with self._submit_lock:
            await self._cancel_active(CancelReason.SUPERSEDED)

            session = Session(
                conversation_id=self.conversation_id,
                prompt=text,
                start_time=self._clock(),
            )
            self.session = session
            self.state = SessionState.STARTING
            self.display_text = ""
            session.task = asyncio.create_task(
                self._run(session), name=f"silicon-stream-session-{self.conversation_id[:8]}"
            )
            logger.debug("[SiliconStream Session] Submitted prompt (%d chars).", len(text))
            return session.task

    def stop(self, user_initiated: bool = True) -> bool:
        """Request cancellation of the active session. Returns False when idle."""
        session = self.session
        if session is None or session.finalizing:
            return False
        self._request_cancel(
            session, CancelReason.USER if user_initiated else CancelReason.NON_USER
        )
        return True

    async def clear(self) -> None:
        """Discard any in-flight response and start a fresh conversation."""
        async with self._submit_lock:
            await self._cancel_active(CancelReason.NON_USER)
            self.store.clear()
            self.display_text = ""
            self.last_outcome = None
            logger.info("[SiliconStream Session] Conversation cleared.")

    async def wait_idle(self) -> None:
        session = self.session
        if session is not None and session.task is not None:
            await asyncio.wait({session.task})

    # -- cancellation -------------------------------------------------------

    def _request_cancel(self, session: Session, reason: CancelReason) -> None:
        if session.cancel_reason is None:
            session.cancel_reason = reason
            session.user_initiated_stop = reason is CancelReason.USER
        # A task that has not started yet sees the flag on its first step.
        if session.running and not session.finalizing and session.task is not None:
            session.task.cancel()

    async def _cancel_active(self, reason: CancelReason) -> None:
        session = self.session
        if session is None or session.task is None:
            return
        logger.debug("[SiliconStream Session] Cancelling active session (%s).", reason.value)
        self._request_cancel(session, reason)
        await asyncio.wait({session.task})

    # -- session lifecycle --------------------------------------------------

    async def _run(self, session: Session) -> StreamOutcome:
        session.running = True
        stream: AsyncIterator[str] | None = None
        result: SessionState | Stop | None = None
        error: BaseException | None = None

        try:
            self.sink.on_session_start(session.prompt)
            if session.cancel_reason is None:
                stream = await self._open_stream(session)
                self._enter_streaming(session)
                result = await self._pump(session, stream)
        except asyncio.CancelledError:
            if session.cancel_reason is None:
                # Cancelled from outside the coordinator: finalize, then propagate.
                session.cancel_reason = CancelReason.NON_USER
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
        except Exception as exc:
            error = exc
            logger.exception(
                "[SiliconStream Session] Generation failed in state %s.", session.state.value
            )
        finally:
            session.finalizing = True
            await self._stop_refresh()
            if stream is not None:
                await self._close_stream(stream)
            stats = calculate_token_stats(
                session.token_count, session.start_time, session.first_token_time, self._clock()
            )
            outcome = self._build_outcome(session, result, error, stats)
            self._finalize(session, outcome)
        return outcome

    async def _open_stream(self, session: Session) -> AsyncIterator[str]:
        entry = self.catalog.entry(self.model_id)
        family = entry.runtime if entry is not None else None
        supported = getattr(self.engine, "runtime_families", None)
        if family is not None and supported is not None and family not in supported:
            raise ConfigurationError(
                f"[SiliconStream] {type(self.engine).__name__} does not support "
                f"{family.value} models ({self.model_id})."
            )

        self.store.append_message("user", session.prompt)
        conversation = Conversation(self.model_id, self.store.history_for_model())
        if self.budgeter.should_archive(conversation):
            doomed = self.budgeter.select_messages_to_archive(conversation)
            self.store.archive_messages(message.id for message in doomed)

        budget = self.budgeter.budget_for(self.model_id)
        session.response_token_budget = budget.response_token_ceiling
        return await self.engine.open_stream(
            session.prompt,
            self.store.history_for_model(),
            budget.response_token_ceiling,
            SamplingParams.for_family(family),
        )

    def _enter_streaming(self, session: Session) -> None:
        session.state = SessionState.STREAMING
        self.state = SessionState.STREAMING
        self._refresh_task = asyncio.create_task(self._refresh_loop(session))

    def _stop_markers(self) -> tuple[str, ...]:
        if self.settings.stop_markers is not None:
            return self.settings.stop_markers
        entry = self.catalog.entry(self.model_id)
        return entry.stop_markers if entry is not None else ()

    async def _pump(
        self, session: Session, stream: AsyncIterator[str]
    ) -> SessionState | Stop | None:
        scanner = StopSequenceScanner(self._stop_markers())
        guard = RepetitionGuard(session.prompt, self.settings.guard)

        async for fragment in stream:
            if session.cancel_reason is not None:
                return None
            piece = scanner.consume(fragment)
            if piece.text:
                decision = self._emit(session, guard, piece.text)
                if isinstance(decision, Stop):
                    return decision
            if piece.hit_stop:
                return SessionState.COMPLETED

        if session.cancel_reason is not None:
            return None
        tail = scanner.flush()
        if tail:
            decision = self._emit(session, guard, tail)
            if isinstance(decision, Stop):
                return decision
        return SessionState.COMPLETED

    def _emit(self, session: Session, guard: RepetitionGuard, text: str):
        if session.first_token_time is None:
            session.first_token_time = self._clock()
        session.token_count += 1
        session.text += text
        self.sink.on_text(text)
        return guard.register(text)

    async def _refresh_loop(self, session: Session) -> None:
        interval = self.settings.refresh_interval
        while True:
            await asyncio.sleep(interval)
            try:
                self.sink.on_refresh(session.text)
            except Exception:
                logger.exception("[SiliconStream Session] Refresh tick failed; ticker stopped.")
                return

    async def _stop_refresh(self) -> None:
        ticker, self._refresh_task = self._refresh_task, None
        if ticker is None:
            return
        ticker.cancel()
        await asyncio.gather(ticker, return_exceptions=True)

    @staticmethod
    async def _close_stream(stream: AsyncIterator[str]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        with contextlib.suppress(Exception):
            await aclose()

    # -- finalization -------------------------------------------------------

    def _build_outcome(
        self,
        session: Session,
        result: SessionState | Stop | None,
        error: BaseException | None,
        stats: TokenStats,
    ) -> StreamOutcome:
        if error is not None:
            return Failed(error=error, message=self.settings.failure_message(error), stats=stats)
        if isinstance(result, Stop):
            logger.warning(
                '[SiliconStream Guard] Stopped generation: reason=%s evidence=%d sample="%s"',
                result.reason,
                result.evidence_count,
                _sanitize(result.sample),
            )
            return StoppedByGuard(
                reason=result.reason,
                evidence_count=result.evidence_count,
                sample=result.sample,
                stats=stats,
                text=session.text,
            )
        if result is SessionState.COMPLETED:
            return Completed(token_count=session.token_count, stats=stats, text=session.text)
        if session.cancel_reason is CancelReason.SUPERSEDED:
            return CancelledBySupersession(stats=stats)
        return CancelledByUser(
            partial_text=session.text,
            user_initiated=session.user_initiated_stop,
            stats=stats,
        )

    def _finalize(self, session: Session, outcome: StreamOutcome) -> None:
        session.outcome = outcome
        session.state = outcome.kind
        self.state = outcome.kind
        self.last_outcome = outcome
        logger.info(
            "[SiliconStream Session] Finished (%s): %s",
            outcome.kind.value,
            outcome.stats.summary(),
        )

        try:
            committed = False
            if isinstance(outcome, (Completed, StoppedByGuard)):
                display = session.text
                committed = self._commit(session.text, session.token_count)
            elif isinstance(outcome, CancelledByUser):
                keep = outcome.user_initiated and bool(outcome.partial_text.strip())
                display = outcome.partial_text if keep else ""
                if keep:
                    committed = self._commit(outcome.partial_text, session.token_count)
            elif isinstance(outcome, Failed):
                display = outcome.message
            else:
                display = ""
            self.display_text = display

            self.sink.on_finish(
                SessionRecord(
                    prompt=session.prompt,
                    outcome=outcome,
                    display_text=display,
                    committed=committed,
                )
            )
        except Exception:
            logger.exception("[SiliconStream Session] Finalization side effects failed.")
        finally:
            if self.session is session:
                self.session = None
            self.state = SessionState.IDLE

    def _commit(self, text: str, token_count: int) -> bool:
        if not text.strip():
            return False
        self.store.append_message("assistant", text, token_count=token_count or None)
        return True

    def __repr__(self) -> str:
        return (
            f"StreamingSessionCoordinator(model_id={self.model_id!r}, "
            f"state={self.state.value}, engine={self.engine!r})"
        )
