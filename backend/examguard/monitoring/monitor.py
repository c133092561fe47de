"""
Proctoring monitor: the registry of live session workers and the single
entry point used by the API layer.

Workers are created lazily the first time a session needs one and are
rehydrated from the event log when the process restarts. Every mutation of a
session goes through its worker; the monitor only routes.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from ..core.exceptions import (
    EventNotFound, InvalidTransition, SessionGone, SessionNotFound, StaleSession,
)
from ..services.session_store import SessionStore
from ..utils.timezone import utc_now
from .classifier import ClassificationContext, ViolationClassifier
from .detectors import DetectorAdapter, DetectorPoller, Observation
from .heartbeat import HeartbeatSupervisor, LivenessAlert, LivenessPolicy, LivenessVerdict
from .ingestion import EventIngestionPipeline
from .notifier import CeleryNotifier, SessionNotifier
from .observers import ObserverHub
from .scoring import ScoringPolicy, replay
from .state_machine import SessionStateMachine
from .types import (
    Accepted, ClassifiedEvent, Decision, SessionRecord, SessionSnapshot, SessionState, Severity,
    ViolationEvent, ViolationKind,
)
from .verification import IdentityVerifier, ThresholdVerifier, VerificationEvidence
from .worker import RetryPolicy, SessionWorker

logger = logging.getLogger(__name__)

HEARTBEAT_DETECTOR = "heartbeat_supervisor"


class ProctoringMonitor:
    def __init__(
        self,
        store: SessionStore,
        scoring_policy: Optional[ScoringPolicy] = None,
        liveness_policy: Optional[LivenessPolicy] = None,
        dedup_window_seconds: float = 2.0,
        verifier: Optional[IdentityVerifier] = None,
        notifier: Optional[SessionNotifier] = None,
        hub: Optional[ObserverHub] = None,
        classifier: Optional[ViolationClassifier] = None,
        clock: Callable[[], datetime] = utc_now,
        retry: RetryPolicy = RetryPolicy(),
        verification_timeout: float = 10.0,
    ):
        self.store = store
        self.scoring_policy = scoring_policy or ScoringPolicy()
        self.liveness_policy = liveness_policy or LivenessPolicy()
        self.dedup_window_seconds = dedup_window_seconds
        self.verifier = verifier or ThresholdVerifier()
        self.notifier = notifier or CeleryNotifier()
        self.hub = hub or ObserverHub()
        self.classifier = classifier or ViolationClassifier()
        self.clock = clock
        self.retry = retry
        self.verification_timeout = verification_timeout

        self.machine = SessionStateMachine(self.scoring_policy.escalation)
        self.ingestion = EventIngestionPipeline(clock)
        self.supervisor = HeartbeatSupervisor(self.liveness_policy, clock)
        self._workers: Dict[str, SessionWorker] = {}
        self._pollers: Dict[str, List[DetectorPoller]] = {}
        self._load_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, store: SessionStore, settings, **overrides) -> "ProctoringMonitor":
        options = dict(
            scoring_policy=ScoringPolicy.from_settings(settings),
            liveness_policy=LivenessPolicy.from_settings(settings),
            dedup_window_seconds=settings.proctor_dedup_window_seconds,
            verifier=ThresholdVerifier(settings.proctor_face_match_threshold),
            retry=RetryPolicy.from_settings(settings),
            verification_timeout=settings.proctor_verification_timeout_seconds,
        )
        options.update(overrides)
        return cls(store, **options)

    # Lifecycle of the monitor itself

    async def start(self) -> None:
        """Rehydrate in-progress sessions and begin liveness sweeps"""
        recovered = 0
        for record in await self.store.list_sessions([SessionState.IN_PROGRESS]):
            worker, _ = await self._load(record.id)
            if worker is not None:
                recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} in-progress session(s) from the event log")
        self.supervisor.start(self.supervise)

    async def stop(self) -> None:
        await self.supervisor.stop()
        pollers = [poller for group in self._pollers.values() for poller in group]
        self._pollers.clear()
        for poller in pollers:
            await poller.stop()
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            await worker.stop()
        logger.info(f"Proctoring monitor stopped ({len(workers)} worker(s))")

    async def drain(self, session_id: Optional[str] = None) -> None:
        """Wait until queued work has been processed"""
        if session_id is not None:
            worker = self._workers.get(session_id)
            workers = [worker] if worker is not None else []
        else:
            workers = list(self._workers.values())
        for worker in workers:
            if not worker.closed:
                await worker.drain()

    @property
    def active_workers(self) -> int:
        return sum(1 for worker in self._workers.values() if not worker.closed)

    def has_live_worker(self, session_id: str) -> bool:
        """True while the session's worker may still write events"""
        worker = self._workers.get(session_id)
        return worker is not None and not worker.closed

    # Worker registry

    async def _load(self, session_id: str) -> Tuple[Optional[SessionWorker], SessionRecord]:
        worker = self._workers.get(session_id)
        if worker is not None and not worker.closed:
            return worker, worker.record

        async with self._load_lock:
            worker = self._workers.get(session_id)
            if worker is not None and not worker.closed:
                return worker, worker.record

            record = await self.store.get_session(session_id)
            if record is None:
                raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
            if record.state.is_terminal:
                return None, record

            events, _ = await self.store.list_events(session_id)
            scorer = replay(session_id, events, self.scoring_policy)
            worker = SessionWorker(
                record=record,
                scorer=scorer,
                machine=self.machine,
                store=self.store,
                hub=self.hub,
                notifier=self.notifier,
                dedup_window_seconds=self.dedup_window_seconds,
                retry=self.retry,
                last_sequence=await self.store.last_sequence(session_id),
                watermark=max((event.timestamp for event in events), default=None),
                clock=self.clock,
                on_started=self._on_started,
                on_terminal=self._on_terminal,
            )
            if events:
                worker.sync_score()
                logger.info(f"Session {session_id}: replayed {len(events)} event(s), score {record.score:g}")
            if record.state == SessionState.IN_PROGRESS:
                self.supervisor.watch(session_id, record.last_heartbeat_at or record.started_at)

            self._workers[session_id] = worker
            task = worker.start()
            task.add_done_callback(lambda _: self._release(worker))
            return worker, record

    def _release(self, worker: SessionWorker) -> None:
        if self._workers.get(worker.session_id) is worker:
            del self._workers[worker.session_id]

    def _on_started(self, worker: SessionWorker) -> None:
        self.supervisor.watch(worker.session_id, worker.record.started_at)

    def _on_terminal(self, worker: SessionWorker) -> None:
        self.supervisor.forget(worker.session_id)
        for poller in self._pollers.pop(worker.session_id, []):
            poller.cancel()

    @staticmethod
    def _not_accepting(record: SessionRecord) -> StaleSession:
        return StaleSession(
            f"Session {record.id} is {record.state.value}; "
            f"events are only accepted while the exam is in progress",
            session_id=record.id,
        )

    @staticmethod
    def _finished(record: SessionRecord, requested: SessionState) -> InvalidTransition:
        return InvalidTransition(
            f"Cannot move session from {record.state.value} to {requested.value}",
            session_id=record.id,
            current_state=record.state.value,
            requested=requested.value,
        )

    # Sessions

    async def create_session(self, student_id: str, exam_id: str) -> SessionSnapshot:
        record = SessionRecord(
            id=str(uuid.uuid4()),
            student_id=student_id,
            exam_id=exam_id,
            state=SessionState.PENDING,
            created_at=self.clock(),
        )
        stored = await self.store.create_session(record)
        logger.info(f"Created proctoring session {stored.id} for student {student_id}, exam {exam_id}")
        return stored.snapshot()

    async def get_snapshot(self, session_id: str) -> SessionSnapshot:
        worker = self._workers.get(session_id)
        if worker is not None and not worker.closed:
            return worker.record.snapshot()
        record = await self.store.get_session(session_id)
        if record is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        return record.snapshot()

    async def current_score(self, session_id: str, at: Optional[datetime] = None) -> float:
        worker, record = await self._load(session_id)
        if worker is None:
            return record.score
        return worker.scorer.current_score(at)

    # Ingestion

    async def ingest(self, session_id: str, event: ClassifiedEvent) -> Accepted:
        worker, record = await self._load(session_id)
        if worker is None:
            raise self._not_accepting(record)
        return self.ingestion.accept(worker, event)

    async def ingest_observation(self, session_id: str, observation: Observation) -> List[Accepted]:
        worker, record = await self._load(session_id)
        if worker is None:
            raise self._not_accepting(record)
        context = ClassificationContext(record.id, record.exam_id, record.student_id)
        return [self.ingestion.accept(worker, event) for event in self.classifier.classify(observation, context)]

    async def attach_detector(self, session_id: str, adapter: DetectorAdapter,
                              interval_seconds: float = 1.0) -> DetectorPoller:
        """Poll ``adapter`` for the session until it ends"""
        worker, record = await self._load(session_id)
        if worker is None:
            raise self._not_accepting(record)

        async def forward(observation: Observation) -> None:
            try:
                await self.ingest_observation(session_id, observation)
            except StaleSession:
                logger.debug(f"Session {session_id}: dropped {adapter.detector_id} observation after session end")

        poller = DetectorPoller(adapter, forward, interval_seconds)
        self._pollers.setdefault(session_id, []).append(poller)
        poller.start()
        logger.info(f"Session {session_id}: attached detector {adapter.detector_id}")
        return poller

    # Lifecycle commands

    async def verify(self, session_id: str, evidence: VerificationEvidence,
                     timeout: Optional[float] = None) -> SessionSnapshot:
        worker, record = await self._load(session_id)
        if worker is None:
            raise self._finished(record, SessionState.VERIFIED)
        return await worker.execute(worker.verify, self.verifier, evidence, timeout or self.verification_timeout)

    async def start_exam(self, session_id: str) -> SessionSnapshot:
        worker, record = await self._load(session_id)
        if worker is None:
            raise self._finished(record, SessionState.IN_PROGRESS)
        return await worker.execute(worker.start_exam)

    async def submit(self, session_id: str) -> SessionSnapshot:
        worker, record = await self._load(session_id)
        if worker is None:
            raise self._finished(record, SessionState.COMPLETED)
        return await worker.execute(worker.submit_exam)

    async def pulse(self, session_id: str, observed_status: Optional[str] = None,
                    at: Optional[datetime] = None) -> None:
        worker, record = await self._load(session_id)
        if worker is None or record.state.is_terminal:
            raise SessionGone(f"Session {session_id} is {record.state.value}", session_id=session_id)
        at = at or self.clock()
        self.supervisor.pulse(session_id, at)
        worker.post(worker.record_pulse, observed_status, at)

    async def supervise(self, now: Optional[datetime] = None) -> List[LivenessAlert]:
        """One liveness sweep; stalls become heartbeat_timeout violations"""
        alerts = self.supervisor.sweep(now)
        for alert in alerts:
            worker = self._workers.get(alert.session_id)
            if worker is None or not worker.accepting_events:
                self.supervisor.forget(alert.session_id)
                continue

            event = ClassifiedEvent(
                kind=ViolationKind.HEARTBEAT_TIMEOUT,
                severity=Severity.HIGH,
                confidence=1.0,
                detected_at=alert.at,
                description=f"No heartbeat for {alert.silent_seconds:g} seconds",
                detector=HEARTBEAT_DETECTOR,
                metadata={
                    "last_pulse_at": alert.last_pulse_at.isoformat(),
                    "consecutive_timeouts": alert.consecutive_timeouts,
                },
            )
            try:
                self.ingestion.accept(worker, event)
            except StaleSession:
                self.supervisor.forget(alert.session_id)
                continue

            if alert.verdict == LivenessVerdict.ABANDONED:
                reason = (f"Session abandoned: no heartbeat for {alert.silent_seconds:g} seconds "
                          f"({alert.consecutive_timeouts} consecutive timeouts)")
                worker.post(worker.abandon, reason)
        return alerts

    # Review

    async def record_decision(self, session_id: str, decision: Decision, reviewer: Optional[str] = None,
                              notes: Optional[str] = None) -> SessionSnapshot:
        worker = self._workers.get(session_id)
        if worker is not None and not worker.closed:
            snapshot = await worker.execute(worker.record_decision, decision, reviewer, notes)
            logger.info(f"Session {session_id}: decision {decision.value} recorded by {reviewer or 'unknown'}")
            return snapshot

        record = await self.store.get_session(session_id)
        if record is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)

        at = self.clock()
        self.machine.record_decision(record, decision, at, reviewer, notes)
        if not await self.store.set_decision(session_id, decision, at, reviewer, notes):
            raise InvalidTransition(
                "Decision already recorded",
                session_id=session_id,
                current_state=record.state.value,
                requested=f"decision:{decision.value}",
            )

        logger.info(f"Session {session_id}: decision {decision.value} recorded by {reviewer or 'unknown'}")
        self.hub.publish(session_id, {"type": "decision", "decision": decision.value, "reviewer": reviewer})
        return record.snapshot()

    async def review_event(self, session_id: str, event_id: str, false_positive: bool,
                           reviewer: Optional[str] = None, notes: Optional[str] = None) -> ViolationEvent:
        if await self.store.get_session(session_id) is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
        event = await self.store.review_event(session_id, event_id, false_positive, reviewer, notes, self.clock())
        if event is None:
            raise EventNotFound(f"Event {event_id} not found in session {session_id}", session_id=session_id)
        logger.info(f"Session {session_id}: event {event_id} reviewed "
                    f"({'false positive' if false_positive else 'confirmed'})")
        return event

    # Observers

    def subscribe(self, session_id: str) -> asyncio.Queue:
        return self.hub.subscribe(session_id)

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        self.hub.unsubscribe(session_id, queue)
