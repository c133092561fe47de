"""
Session lifecycle.

    pending -> verified -> in_progress -> completed | flagged | terminated

The machine mutates a :class:`SessionRecord` in place and is only ever
driven by that session's worker, so transitions for one session are
serialized. Every rejected transition raises; nothing is silently ignored.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from ..core.exceptions import InvalidTransition, VerificationFailed
from .risk import EscalationPolicy, RiskLevel, assess_risk, requires_review
from .types import Decision, SessionRecord, SessionState, Severity

logger = logging.getLogger(__name__)

TRANSITIONS = {
    SessionState.PENDING: frozenset({SessionState.VERIFIED}),
    SessionState.VERIFIED: frozenset({SessionState.IN_PROGRESS}),
    SessionState.IN_PROGRESS: frozenset({
        SessionState.COMPLETED,
        SessionState.FLAGGED,
        SessionState.TERMINATED,
    }),
    SessionState.COMPLETED: frozenset(),
    SessionState.FLAGGED: frozenset(),
    SessionState.TERMINATED: frozenset(),
}


@dataclass(frozen=True)
class VerificationResult:
    face_verified: bool
    environment_checked: bool
    reason: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.face_verified and self.environment_checked


@dataclass(frozen=True)
class Transition:
    session_id: str
    from_state: SessionState
    to_state: SessionState
    at: datetime
    reason: Optional[str] = None
    decision: Optional[Decision] = None


class SessionStateMachine:
    def __init__(self, policy: EscalationPolicy):
        self.policy = policy

    def can_transition(self, current: SessionState, target: SessionState) -> bool:
        return target in TRANSITIONS[current]

    def _move(self, record: SessionRecord, target: SessionState, at: datetime,
              reason: Optional[str] = None) -> Transition:
        current = record.state
        if not self.can_transition(current, target):
            raise InvalidTransition(
                f"Cannot move session from {current.value} to {target.value}",
                session_id=record.id,
                current_state=current.value,
                requested=target.value,
            )
        record.state = target
        if target.is_terminal:
            record.ended_at = at
        logger.info(f"Session {record.id}: {current.value} -> {target.value}" + (f" ({reason})" if reason else ""))
        return Transition(record.id, current, target, at, reason)

    def verify(self, record: SessionRecord, result: VerificationResult, at: datetime) -> Transition:
        if record.state != SessionState.PENDING:
            raise InvalidTransition(
                f"Cannot verify a session in state {record.state.value}",
                session_id=record.id,
                current_state=record.state.value,
                requested=SessionState.VERIFIED.value,
            )
        if not result.passed:
            reason = result.reason or self._verification_reason(result)
            record.verification_failure_reason = reason
            raise VerificationFailed(reason, session_id=record.id)

        record.face_verified = True
        record.environment_checked = True
        record.verified_at = at
        record.verification_failure_reason = None
        return self._move(record, SessionState.VERIFIED, at)

    def fail_verification(self, record: SessionRecord, reason: str) -> None:
        """Record an externally detected failure (e.g. timeout); state stays pending"""
        if record.state != SessionState.PENDING:
            raise InvalidTransition(
                f"Cannot verify a session in state {record.state.value}",
                session_id=record.id,
                current_state=record.state.value,
                requested=SessionState.VERIFIED.value,
            )
        record.verification_failure_reason = reason
        raise VerificationFailed(reason, session_id=record.id)

    @staticmethod
    def _verification_reason(result: VerificationResult) -> str:
        if not result.face_verified:
            return "Face verification failed"
        return "Environment check failed"

    def start(self, record: SessionRecord, at: datetime) -> Transition:
        transition = self._move(record, SessionState.IN_PROGRESS, at)
        record.started_at = at
        record.last_heartbeat_at = at
        return transition

    def submission_risk(self, record: SessionRecord, severities: Iterable[Severity] = ()) -> RiskLevel:
        if record.critical_event_count:
            severities = list(severities) + [Severity.CRITICAL]
        return assess_risk(record.score, severities, self.policy)

    def submit(self, record: SessionRecord, at: datetime) -> Transition:
        level = self.submission_risk(record)
        if record.review_threshold_crossed or requires_review(level):
            reason = f"Submitted with {level.value.lower()} (score {record.score:g})"
            if record.critical_event_count:
                reason += f", {record.critical_event_count} critical event(s)"
            return self._move(record, SessionState.FLAGGED, at, reason)
        return self._move(record, SessionState.COMPLETED, at)

    def evaluate_score(self, record: SessionRecord, at: datetime) -> Optional[Transition]:
        """Auto-termination check, run after every score update"""
        if record.state != SessionState.IN_PROGRESS:
            return None
        if record.score < self.policy.terminate_threshold:
            return None

        reason = (
            f"Exam terminated: suspicion score {record.score:g} reached the "
            f"termination threshold of {self.policy.terminate_threshold:g}"
        )
        transition = self.terminate(record, at, reason)
        if self.policy.auto_disqualify_enabled and record.score >= self.policy.disqualify_threshold:
            self.record_decision(record, Decision.DISQUALIFIED, at, reviewer="system",
                                 notes=f"Automatic disqualification at score {record.score:g}")
            transition = Transition(
                transition.session_id, transition.from_state, transition.to_state,
                transition.at, transition.reason, Decision.DISQUALIFIED,
            )
        return transition

    def terminate(self, record: SessionRecord, at: datetime, reason: str) -> Transition:
        if not reason:
            raise ValueError("termination requires a reason")
        transition = self._move(record, SessionState.TERMINATED, at, reason)
        record.termination_reason = reason
        return transition

    def record_decision(self, record: SessionRecord, decision: Decision, at: datetime,
                        reviewer: Optional[str] = None, notes: Optional[str] = None) -> None:
        if not record.state.is_terminal:
            raise InvalidTransition(
                f"Decision can only be recorded for a finished session (state {record.state.value})",
                session_id=record.id,
                current_state=record.state.value,
                requested=f"decision:{decision.value}",
            )
        if record.decision is not None:
            raise InvalidTransition(
                f"Decision already recorded as {record.decision.value}",
                session_id=record.id,
                current_state=record.state.value,
                requested=f"decision:{decision.value}",
            )
        record.decision = decision
        record.decided_at = at
        record.decided_by = reviewer
        record.decision_notes = notes
