"""
Tests for the suspicion scoring engine
"""
import pytest
from dataclasses import replace

from examguard.core.exceptions import ScoringFailure
from examguard.monitoring.risk import EscalationPolicy
from examguard.monitoring.scoring import ScoringPolicy, SuspicionScorer, replay, to_fixed
from examguard.monitoring.types import Severity, ViolationKind

from ..factories import at, make_event

pytestmark = pytest.mark.unit


@pytest.fixture
def policy():
    return ScoringPolicy()


@pytest.fixture
def scorer(policy):
    return SuspicionScorer("s-1", policy)


class TestWeights:

    def test_high_event_adds_twelve(self, scorer):
        assert scorer.on_event(make_event(severity=Severity.HIGH)) == 12.0

    @pytest.mark.parametrize("severity, expected", [
        (Severity.LOW, 2.0),
        (Severity.MEDIUM, 5.0),
        (Severity.HIGH, 12.0),
        (Severity.CRITICAL, 25.0),
    ])
    def test_default_weight_table(self, scorer, severity, expected):
        assert scorer.on_event(make_event(severity=severity)) == expected

    def test_confidence_scales_contribution_in_fixed_point(self, scorer):
        # 12 * 0.7 is 8.399999... in binary floating point
        assert scorer.on_event(make_event(severity=Severity.HIGH, confidence=0.7)) == 8.4

    def test_custom_weights(self):
        weights = {Severity.LOW: 1, Severity.MEDIUM: 3, Severity.HIGH: 10, Severity.CRITICAL: 40}
        scorer = SuspicionScorer("s-1", ScoringPolicy(weights=weights))
        assert scorer.on_event(make_event(severity=Severity.CRITICAL)) == 40.0

    def test_missing_weight_rejected(self):
        with pytest.raises(ValueError):
            ScoringPolicy(weights={Severity.LOW: 1})

    def test_to_fixed_rounds_half_up(self):
        assert to_fixed(0.0005) == 1
        assert to_fixed(12.3456) == 12346


class TestClamp:

    def test_score_never_exceeds_hundred(self, scorer):
        for i in range(6):
            scorer.on_event(make_event(sequence=i + 1, severity=Severity.CRITICAL))
        assert scorer.score == 100.0
        assert scorer.peak == 100.0

    def test_zero_confidence_adds_nothing(self, scorer):
        assert scorer.on_event(make_event(confidence=0.0)) == 0.0
        assert len(scorer.samples) == 1


class TestDecay:

    def test_linear_decay_per_minute_of_event_time(self, scorer):
        scorer.on_event(make_event(sequence=1, seconds=0, severity=Severity.HIGH))
        # four minutes later: 12 - 4 + 2
        assert scorer.on_event(make_event(sequence=2, seconds=240, severity=Severity.LOW)) == 10.0

    def test_decay_stops_at_floor(self):
        scorer = SuspicionScorer("s-1", ScoringPolicy(decay_floor=5.0))
        scorer.on_event(make_event(sequence=1, seconds=0, severity=Severity.HIGH))
        assert scorer.current_score(at(3600)) == 5.0

    def test_current_score_projection_does_not_mutate(self, scorer):
        scorer.on_event(make_event(severity=Severity.HIGH))
        assert scorer.current_score(at(120)) == 10.0
        assert scorer.score == 12.0

    def test_out_of_order_event_does_not_rewind_clock(self, scorer):
        scorer.on_event(make_event(sequence=1, seconds=120, severity=Severity.HIGH))
        scorer.on_event(make_event(sequence=2, seconds=60, severity=Severity.LOW))
        assert scorer.score == 14.0
        assert scorer.current_score(at(180)) == 13.0

    def test_no_decay_when_disabled(self):
        scorer = SuspicionScorer("s-1", ScoringPolicy(decay_per_minute=0))
        scorer.on_event(make_event(severity=Severity.HIGH))
        assert scorer.current_score(at(86400)) == 12.0


class TestFloors:

    def test_critical_event_pins_floor(self, scorer):
        scorer.on_event(make_event(sequence=1, seconds=0, severity=Severity.MEDIUM))
        scorer.on_event(make_event(sequence=2, seconds=0, severity=Severity.CRITICAL))
        assert scorer.floor == 30.0
        assert scorer.current_score(at(3600)) == 30.0
        assert scorer.critical_event_count == 1

    def test_review_threshold_crossing_sets_floor(self, scorer):
        for i in range(5):
            scorer.on_event(make_event(sequence=i + 1, seconds=0, severity=Severity.HIGH))
        assert scorer.score == 60.0
        assert scorer.review_threshold_crossed
        assert scorer.floor == 50.0
        assert scorer.current_score(at(7200)) == 50.0

    def test_below_review_threshold_not_marked(self, scorer):
        scorer.on_event(make_event(severity=Severity.HIGH))
        assert not scorer.review_threshold_crossed


class TestMerges:

    def test_merge_adds_only_top_up(self, scorer):
        first = make_event(event_id="e-1", severity=Severity.MEDIUM, confidence=0.5)
        scorer.on_event(first)
        assert scorer.score == 2.5
        merged = replace(first, severity=Severity.HIGH, confidence=1.0, merged_count=2)
        assert scorer.on_event(merged) == 12.0

    def test_resend_of_same_event_is_idempotent(self, scorer):
        event = make_event(event_id="e-1", severity=Severity.HIGH)
        scorer.on_event(event)
        assert scorer.on_event(replace(event, merged_count=2)) == 12.0

    def test_weaker_merge_never_lowers_contribution(self, scorer):
        event = make_event(event_id="e-1", severity=Severity.HIGH, confidence=1.0)
        scorer.on_event(event)
        scorer.on_event(replace(event, confidence=0.5))
        assert scorer.score == 12.0


class TestFailures:

    def test_foreign_event_raises(self, scorer):
        with pytest.raises(ScoringFailure):
            scorer.on_event(make_event(session_id="other"))

    def test_confidence_out_of_range_raises(self, scorer):
        with pytest.raises(ScoringFailure):
            scorer.on_event(make_event(confidence=1.5))
        assert scorer.score == 0.0


class TestReplay:

    def test_replay_is_deterministic(self, policy):
        events = [
            make_event(sequence=1, seconds=0, severity=Severity.HIGH),
            make_event(sequence=2, seconds=30, severity=Severity.MEDIUM, confidence=0.8),
            make_event(sequence=3, seconds=95, severity=Severity.CRITICAL),
            make_event(sequence=4, seconds=400, severity=Severity.LOW),
        ]
        first = replay("s-1", events, policy)
        second = replay("s-1", list(reversed(events)), policy)
        assert [s.score for s in first.samples] == [s.score for s in second.samples]
        assert first.score == second.score

    def test_replay_orders_ties_by_sequence(self, policy):
        a = make_event(sequence=2, seconds=10, severity=Severity.LOW)
        b = make_event(sequence=1, seconds=10, severity=Severity.HIGH)
        scorer = replay("s-1", [a, b], policy)
        assert [s.triggering_event_id for s in scorer.samples] == [b.id, a.id]

    def test_replay_can_skip_false_positives(self, policy):
        events = [
            make_event(sequence=1, severity=Severity.HIGH, false_positive=True),
            make_event(sequence=2, severity=Severity.MEDIUM),
        ]
        assert replay("s-1", events, policy).score == 17.0
        assert replay("s-1", events, policy, exclude_false_positives=True).score == 5.0

    def test_three_criticals_reach_termination_threshold(self, policy):
        events = [
            make_event(sequence=i + 1, seconds=i * 5, kind=ViolationKind.MULTIPLE_FACES,
                       severity=Severity.CRITICAL)
            for i in range(3)
        ]
        scorer = replay("s-1", events, policy)
        assert scorer.score == 75.0
        assert scorer.score >= policy.escalation.terminate_threshold


class TestPolicy:

    def test_escalation_thresholds_must_be_ordered(self):
        with pytest.raises(ValueError):
            EscalationPolicy(review_threshold=80, terminate_threshold=75)
