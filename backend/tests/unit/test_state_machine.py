"""
Tests for the session lifecycle and the shared risk bands
"""
import pytest

from examguard.core.exceptions import InvalidTransition, VerificationFailed
from examguard.monitoring.risk import EscalationPolicy, RiskLevel, assess_risk, requires_review
from examguard.monitoring.state_machine import SessionStateMachine, VerificationResult
from examguard.monitoring.types import Decision, SessionRecord, SessionState, Severity

from ..factories import at

pytestmark = pytest.mark.unit

PASSED = VerificationResult(face_verified=True, environment_checked=True)


@pytest.fixture
def machine():
    return SessionStateMachine(EscalationPolicy())


@pytest.fixture
def record():
    return SessionRecord(id="s-1", student_id="student-1", exam_id="exam-1", created_at=at(0))


def started(machine, record):
    machine.verify(record, PASSED, at(10))
    machine.start(record, at(20))
    return record


class TestRiskBands:

    @pytest.mark.parametrize("score, expected", [
        (0, RiskLevel.CLEAN),
        (24.9, RiskLevel.CLEAN),
        (25, RiskLevel.LOW),
        (49.999, RiskLevel.LOW),
        (50, RiskLevel.MEDIUM),
        (74, RiskLevel.MEDIUM),
        (75, RiskLevel.HIGH),
        (100, RiskLevel.HIGH),
    ])
    def test_score_bands(self, score, expected):
        assert assess_risk(score) == expected

    def test_critical_event_lifts_to_medium(self):
        assert assess_risk(10, [Severity.LOW, Severity.CRITICAL]) == RiskLevel.MEDIUM

    def test_critical_event_never_lowers_high(self):
        assert assess_risk(80, [Severity.CRITICAL]) == RiskLevel.HIGH

    def test_review_required_from_medium(self):
        assert not requires_review(RiskLevel.LOW)
        assert requires_review(RiskLevel.MEDIUM)
        assert requires_review(RiskLevel.HIGH)


class TestVerification:

    def test_pending_to_verified(self, machine, record):
        transition = machine.verify(record, PASSED, at(5))
        assert transition.to_state == SessionState.VERIFIED
        assert record.face_verified and record.environment_checked
        assert record.verified_at == at(5)

    def test_failed_face_match_keeps_pending(self, machine, record):
        with pytest.raises(VerificationFailed):
            machine.verify(record, VerificationResult(False, True), at(5))
        assert record.state == SessionState.PENDING
        assert record.verification_failure_reason == "Face verification failed"

    def test_failure_reason_from_verifier_is_recorded(self, machine, record):
        with pytest.raises(VerificationFailed):
            machine.verify(record, VerificationResult(True, False, "Room scan incomplete"), at(5))
        assert record.verification_failure_reason == "Room scan incomplete"

    def test_only_pending_can_be_verified(self, machine, record):
        machine.verify(record, PASSED, at(5))
        with pytest.raises(InvalidTransition):
            machine.verify(record, PASSED, at(6))

    def test_start_rejected_while_pending(self, machine, record):
        with pytest.raises(InvalidTransition):
            machine.start(record, at(5))
        assert record.state == SessionState.PENDING

    def test_start_sets_timestamps(self, machine, record):
        started(machine, record)
        assert record.state == SessionState.IN_PROGRESS
        assert record.started_at == at(20)
        assert record.last_heartbeat_at == at(20)


class TestSubmission:

    def test_clean_submission_completes(self, machine, record):
        started(machine, record)
        record.score = 12.0
        assert machine.submit(record, at(60)).to_state == SessionState.COMPLETED
        assert record.ended_at == at(60)

    def test_score_above_review_threshold_flags(self, machine, record):
        started(machine, record)
        record.score = 52.0
        transition = machine.submit(record, at(60))
        assert transition.to_state == SessionState.FLAGGED
        assert "52" in transition.reason

    def test_review_crossing_flags_even_after_decay(self, machine, record):
        started(machine, record)
        record.score = 20.0
        record.review_threshold_crossed = True
        assert machine.submit(record, at(60)).to_state == SessionState.FLAGGED

    def test_critical_event_flags(self, machine, record):
        started(machine, record)
        record.score = 25.0
        record.critical_event_count = 1
        assert machine.submit(record, at(60)).to_state == SessionState.FLAGGED

    def test_cannot_submit_before_start(self, machine, record):
        with pytest.raises(InvalidTransition):
            machine.submit(record, at(60))


class TestAutoTermination:

    def test_below_threshold_does_nothing(self, machine, record):
        started(machine, record)
        record.score = 74.999
        assert machine.evaluate_score(record, at(30)) is None
        assert record.state == SessionState.IN_PROGRESS

    def test_threshold_terminates_with_reason(self, machine, record):
        started(machine, record)
        record.score = 75.0
        transition = machine.evaluate_score(record, at(30))
        assert transition.to_state == SessionState.TERMINATED
        assert record.termination_reason
        assert "75" in record.termination_reason
        assert record.decision is None

    def test_auto_disqualify_when_enabled(self, record):
        machine = SessionStateMachine(EscalationPolicy(auto_disqualify_enabled=True))
        started(machine, record)
        record.score = 92.0
        transition = machine.evaluate_score(record, at(30))
        assert transition.decision == Decision.DISQUALIFIED
        assert record.decision == Decision.DISQUALIFIED
        assert record.decided_by == "system"

    def test_auto_disqualify_needs_its_own_threshold(self, record):
        machine = SessionStateMachine(EscalationPolicy(auto_disqualify_enabled=True))
        started(machine, record)
        record.score = 80.0
        transition = machine.evaluate_score(record, at(30))
        assert transition.to_state == SessionState.TERMINATED
        assert transition.decision is None

    def test_terminate_requires_reason(self, machine, record):
        started(machine, record)
        with pytest.raises(ValueError):
            machine.terminate(record, at(30), "")


class TestTerminalStates:

    @pytest.mark.parametrize("target", list(SessionState))
    def test_no_transition_out_of_terminal(self, machine, target):
        assert not machine.can_transition(SessionState.TERMINATED, target)
        assert not machine.can_transition(SessionState.COMPLETED, target)
        assert not machine.can_transition(SessionState.FLAGGED, target)

    def test_decision_only_in_terminal_state(self, machine, record):
        started(machine, record)
        with pytest.raises(InvalidTransition):
            machine.record_decision(record, Decision.CLEARED, at(30))

    def test_decision_recorded_once(self, machine, record):
        started(machine, record)
        machine.submit(record, at(40))
        machine.record_decision(record, Decision.CLEARED, at(50), reviewer="reviewer-1")
        assert record.decision == Decision.CLEARED
        assert record.decided_by == "reviewer-1"
        with pytest.raises(InvalidTransition):
            machine.record_decision(record, Decision.WARNING, at(60))
