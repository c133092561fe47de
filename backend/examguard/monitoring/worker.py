"""
Session actor.

Each active session owns one worker task and one queue. Events and
lifecycle commands for the session are processed strictly in queue order,
so the score and the state machine are only ever touched by this task.
When the session reaches a terminal state the worker drains whatever was
already queued (keeping the audit log complete) and exits.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..core.exceptions import InvalidTransition, ScoringFailure, SessionGone, VerificationFailed
from ..services.session_store import SessionStore
from ..utils.timezone import utc_now
from .ingestion import DedupWindow, EventEnvelope
from .notifier import SessionNotifier
from .observers import ObserverHub
from .scoring import SuspicionScorer
from .state_machine import SessionStateMachine, Transition
from .types import Decision, SessionRecord, SessionState, ViolationEvent
from .verification import IdentityVerifier, VerificationEvidence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    delay_seconds: float = 0.05

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.proctor_scoring_max_retries,
            delay_seconds=settings.proctor_scoring_retry_delay,
        )


class _Command:
    __slots__ = ("operation", "args", "future")

    def __init__(self, operation: Callable[..., Awaitable[Any]], args: tuple, future: Optional[asyncio.Future]):
        self.operation = operation
        self.args = args
        self.future = future


class SessionWorker:
    def __init__(
        self,
        record: SessionRecord,
        scorer: SuspicionScorer,
        machine: SessionStateMachine,
        store: SessionStore,
        hub: ObserverHub,
        notifier: SessionNotifier,
        dedup_window_seconds: float,
        retry: RetryPolicy = RetryPolicy(),
        last_sequence: int = 0,
        watermark: Optional[datetime] = None,
        clock: Callable[[], datetime] = utc_now,
        on_started: Optional[Callable[["SessionWorker"], None]] = None,
        on_terminal: Optional[Callable[["SessionWorker"], None]] = None,
    ):
        self.record = record
        self.scorer = scorer
        self.machine = machine
        self.store = store
        self.hub = hub
        self.notifier = notifier
        self.retry = retry
        self.clock = clock
        self.on_started = on_started
        self.on_terminal = on_terminal
        self.dedup = DedupWindow(dedup_window_seconds)
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._sequence = last_sequence
        self.watermark = watermark
        self._warned = record.score >= machine.policy.warning_threshold
        self._task: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> str:
        return self.record.id

    @property
    def state(self) -> SessionState:
        return self.record.state

    @property
    def accepting_events(self) -> bool:
        return self.record.state == SessionState.IN_PROGRESS and not self.closed

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def submit(self, envelope: EventEnvelope) -> None:
        if self.closed:
            raise SessionGone(f"Session {self.session_id} is no longer monitored", session_id=self.session_id)
        self.queue.put_nowait(envelope)

    async def execute(self, operation: Callable[..., Awaitable[Any]], *args) -> Any:
        """Run ``operation(*args)`` on the worker and wait for its result"""
        if self.closed:
            raise SessionGone(f"Session {self.session_id} is no longer monitored", session_id=self.session_id)
        future = asyncio.get_running_loop().create_future()
        self.queue.put_nowait(_Command(operation, args, future))
        return await future

    def post(self, operation: Callable[..., Awaitable[Any]], *args) -> None:
        """Queue ``operation(*args)`` without waiting; failures are logged"""
        if self.closed:
            raise SessionGone(f"Session {self.session_id} is no longer monitored", session_id=self.session_id)
        self.queue.put_nowait(_Command(operation, args, None))

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"session-worker:{self.session_id}")
        return self._task

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def drain(self) -> None:
        await self.queue.join()

    async def run(self) -> None:
        logger.info(f"Worker started for session {self.session_id} ({self.record.state.value})")
        try:
            while True:
                item = await self.queue.get()
                try:
                    if isinstance(item, EventEnvelope):
                        await self._handle_event(item)
                    else:
                        await self._handle_command(item)
                except Exception as e:
                    logger.error(f"Session {self.session_id}: unhandled worker error: {e}", exc_info=True)
                finally:
                    self.queue.task_done()

                if self.record.state.is_terminal and self.queue.empty():
                    break
        finally:
            self.closed = True
            self._abandon_queue()
            logger.info(f"Worker stopped for session {self.session_id} ({self.record.state.value})")

    def _abandon_queue(self) -> None:
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if isinstance(item, _Command) and item.future is not None and not item.future.done():
                item.future.set_exception(
                    SessionGone(f"Session {self.session_id} is no longer monitored", session_id=self.session_id)
                )
            elif isinstance(item, EventEnvelope):
                logger.warning(f"Session {self.session_id}: event #{item.event.sequence} dropped at shutdown")
            self.queue.task_done()

    async def _handle_command(self, command: _Command) -> None:
        try:
            result = await command.operation(*command.args)
        except Exception as e:
            if command.future is not None:
                if not command.future.done():
                    command.future.set_exception(e)
            else:
                logger.error(f"Session {self.session_id}: background command failed: {e}", exc_info=True)
            return
        if command.future is not None and not command.future.done():
            command.future.set_result(result)

    # Events

    async def _handle_event(self, envelope: EventEnvelope) -> None:
        event = envelope.event
        await self._persist_event(envelope)

        previous_score = self.record.score
        score = await self._score_with_retry(event)
        if score is not None:
            self.sync_score()

        self.hub.publish(self.session_id, {
            "type": "violation",
            "event_id": event.id,
            "sequence": event.sequence,
            "kind": event.kind.value,
            "severity": event.severity.value,
            "merged": envelope.merged,
            "score": self.record.score,
        })

        if self.record.state == SessionState.IN_PROGRESS:
            self._maybe_warn(previous_score)
            transition = self.machine.evaluate_score(self.record, self.clock())
            if transition is not None:
                await self._after_transition(transition)
                return

        await self.store.save_session(self.record)

    async def _persist_event(self, envelope: EventEnvelope) -> None:
        event = envelope.event
        delay = self.retry.delay_seconds
        for attempt in range(1, self.retry.max_retries + 1):
            try:
                if envelope.merged:
                    await self.store.update_merged_event(event)
                else:
                    await self.store.append_event(event)
                return
            except Exception as e:
                logger.warning(f"Session {self.session_id}: writing event #{event.sequence} failed "
                               f"(attempt {attempt}/{self.retry.max_retries}): {e}")
                if attempt == self.retry.max_retries:
                    logger.error(f"Session {self.session_id}: event #{event.sequence} could not be persisted")
                    self.record.score_discrepancy = True
                    self.notifier.scoring_discrepancy(self.session_id, event.id, f"persistence failed: {e}")
                    return
                await asyncio.sleep(delay)
                delay *= 2

    async def _score_with_retry(self, event: ViolationEvent) -> Optional[float]:
        delay = self.retry.delay_seconds
        failure: Optional[ScoringFailure] = None
        for attempt in range(1, self.retry.max_retries + 1):
            try:
                return self.scorer.on_event(event)
            except ScoringFailure as e:
                failure = e
            except Exception as e:
                failure = ScoringFailure(str(e), self.session_id, event.id)
            logger.warning(f"Session {self.session_id}: scoring event #{event.sequence} failed "
                           f"(attempt {attempt}/{self.retry.max_retries}): {failure}")
            if attempt < self.retry.max_retries:
                await asyncio.sleep(delay)
                delay *= 2

        logger.error(f"Session {self.session_id}: scoring retries exhausted for event {event.id}; "
                     f"event is logged but not scored")
        self.record.score_discrepancy = True
        self.notifier.scoring_discrepancy(self.session_id, event.id, str(failure))
        return None

    def sync_score(self) -> None:
        self.record.score = self.scorer.score
        self.record.peak_score = self.scorer.peak
        self.record.score_floor = self.scorer.floor
        self.record.review_threshold_crossed = self.scorer.review_threshold_crossed
        self.record.critical_event_count = self.scorer.critical_event_count

    def _maybe_warn(self, previous_score: float) -> None:
        threshold = self.machine.policy.warning_threshold
        if self._warned or self.record.score < threshold or previous_score >= threshold:
            return
        self._warned = True
        message = (f"Suspicious activity detected (score {self.record.score:g}). "
                   f"Further violations may end your exam.")
        self.hub.publish(self.session_id, {"type": "warning", "message": message, "score": self.record.score})
        self.notifier.session_notice(self.record.snapshot(), "warning", message)

    async def _after_transition(self, transition: Transition) -> None:
        await self.store.save_session(self.record)
        if transition.decision is not None:
            await self.store.set_decision(
                self.session_id, transition.decision, self.record.decided_at,
                self.record.decided_by, self.record.decision_notes,
            )

        self.hub.publish(self.session_id, {
            "type": "state",
            "from": transition.from_state.value,
            "to": transition.to_state.value,
            "reason": transition.reason,
            "decision": transition.decision.value if transition.decision else None,
            "score": self.record.score,
        })

        if transition.to_state == SessionState.IN_PROGRESS and self.on_started is not None:
            self.on_started(self)
        if transition.to_state in (SessionState.TERMINATED, SessionState.FLAGGED):
            self.notifier.session_notice(self.record.snapshot(), transition.to_state.value, transition.reason)
        if transition.to_state.is_terminal and self.on_terminal is not None:
            self.on_terminal(self)

    # Lifecycle operations, run on the worker through execute()/post()

    async def verify(self, verifier: IdentityVerifier, evidence: VerificationEvidence,
                     timeout: float):
        try:
            try:
                result = await asyncio.wait_for(verifier.verify(self.record.snapshot(), evidence), timeout)
            except asyncio.TimeoutError:
                self.machine.fail_verification(self.record, f"Verification timed out after {timeout:g}s")
            except VerificationFailed:
                raise
            except Exception as e:
                logger.error(f"Session {self.session_id}: verifier error: {e}", exc_info=True)
                self.machine.fail_verification(self.record, f"Verification service error: {e}")
            transition = self.machine.verify(self.record, result, self.clock())
        except VerificationFailed:
            await self.store.save_session(self.record)
            raise
        await self._after_transition(transition)
        return self.record.snapshot()

    async def start_exam(self):
        transition = self.machine.start(self.record, self.clock())
        await self._after_transition(transition)
        return self.record.snapshot()

    async def submit_exam(self):
        transition = self.machine.submit(self.record, self.clock())
        await self._after_transition(transition)
        return self.record.snapshot()

    async def record_pulse(self, observed_status: Optional[str], at: datetime):
        if self.record.state.is_terminal:
            return
        self.record.last_heartbeat_at = at
        self.record.last_observed_status = observed_status
        await self.store.save_session(self.record)

    async def abandon(self, reason: str):
        if self.record.state != SessionState.IN_PROGRESS:
            return self.record.snapshot()
        transition = self.machine.terminate(self.record, self.clock(), reason)
        await self._after_transition(transition)
        return self.record.snapshot()

    async def record_decision(self, decision: Decision, reviewer: Optional[str], notes: Optional[str]):
        """Reviewer decision, applied after the events already queued for the session"""
        at = self.clock()
        self.machine.record_decision(self.record, decision, at, reviewer, notes)
        if not await self.store.set_decision(self.session_id, decision, at, reviewer, notes):
            self.record.decision = None
            self.record.decided_at = None
            self.record.decided_by = None
            self.record.decision_notes = None
            raise InvalidTransition(
                "Decision already recorded",
                session_id=self.session_id,
                current_state=self.record.state.value,
                requested=f"decision:{decision.value}",
            )
        self.hub.publish(self.session_id, {"type": "decision", "decision": decision.value, "reviewer": reviewer})
        return self.record.snapshot()
