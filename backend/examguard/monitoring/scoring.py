"""
Suspicion scoring engine.

Turns the ordered violation stream of one session into a 0-100 suspicion
score. All arithmetic is done on integers (thousandths of a point,
milliseconds of event time) so replaying the same event log always yields
the same trajectory.

Rules:
    - each event adds ``weight[severity] * confidence``, clamped to [0, 100]
    - between events the score decays linearly toward a floor
    - a critical event pins the floor to the score it produced
    - once the review threshold is crossed the floor never drops below it
    - a merged (deduplicated) event only adds its top-up contribution
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Mapping, Optional, Set

from ..core.exceptions import ScoringFailure
from ..utils.timezone import to_epoch_ms
from .risk import EscalationPolicy
from .types import ScoreSample, Severity, ViolationEvent

logger = logging.getLogger(__name__)

SCALE = 1000
MAX_SCORE = 100 * SCALE
MS_PER_MINUTE = 60_000

DEFAULT_WEIGHTS = {
    Severity.LOW: 2.0,
    Severity.MEDIUM: 5.0,
    Severity.HIGH: 12.0,
    Severity.CRITICAL: 25.0,
}


def to_fixed(value: float) -> int:
    return int((Decimal(str(value)) * SCALE).to_integral_value(rounding=ROUND_HALF_UP))


def from_fixed(value: int) -> float:
    return value / SCALE


@dataclass(frozen=True)
class ScoringPolicy:
    weights: Mapping[Severity, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    decay_per_minute: float = 1.0
    decay_floor: float = 0.0
    escalation: EscalationPolicy = field(default_factory=EscalationPolicy)

    def __post_init__(self):
        missing = [s.value for s in Severity if s not in self.weights]
        if missing:
            raise ValueError(f"missing severity weights: {', '.join(missing)}")
        if self.decay_per_minute < 0:
            raise ValueError("decay_per_minute must be non-negative")
        if not 0 <= self.decay_floor <= 100:
            raise ValueError("decay_floor must be within [0, 100]")

    @classmethod
    def from_settings(cls, settings) -> "ScoringPolicy":
        weights = {Severity(name): value for name, value in settings.severity_weights.items()}
        return cls(
            weights=weights,
            decay_per_minute=settings.proctor_decay_per_minute,
            decay_floor=settings.proctor_decay_floor,
            escalation=EscalationPolicy.from_settings(settings),
        )

    def weight_fixed(self, severity: Severity) -> int:
        return to_fixed(self.weights[severity])


class SuspicionScorer:
    """Per-session accumulator, owned by exactly one session worker"""

    def __init__(self, session_id: str, policy: ScoringPolicy):
        self.session_id = session_id
        self.policy = policy
        self._score = 0
        self._floor = to_fixed(policy.decay_floor)
        self._peak = 0
        self._last_ms: Optional[int] = None
        self._review_crossed = False
        self._critical_ids: Set[str] = set()
        self._contributions: Dict[str, int] = {}
        self._decay_fixed = to_fixed(policy.decay_per_minute)
        self._review_fixed = to_fixed(policy.escalation.review_threshold)
        self.samples: List[ScoreSample] = []

    @property
    def score(self) -> float:
        return from_fixed(self._score)

    @property
    def peak(self) -> float:
        return from_fixed(self._peak)

    @property
    def floor(self) -> float:
        return from_fixed(self._floor)

    @property
    def review_threshold_crossed(self) -> bool:
        return self._review_crossed

    @property
    def critical_event_count(self) -> int:
        return len(self._critical_ids)

    def _decayed(self, at_ms: int) -> int:
        if self._last_ms is None or at_ms <= self._last_ms or self._score <= self._floor:
            return self._score
        drop = self._decay_fixed * (at_ms - self._last_ms) // MS_PER_MINUTE
        return max(self._floor, self._score - drop)

    def _advance(self, at_ms: int) -> None:
        self._score = self._decayed(at_ms)
        # Out-of-order events never move the clock backwards
        if self._last_ms is None or at_ms > self._last_ms:
            self._last_ms = at_ms

    def current_score(self, at: Optional[datetime] = None) -> float:
        """Score now, or projected to ``at`` without mutating state"""
        if at is None:
            return self.score
        return from_fixed(self._decayed(to_epoch_ms(at)))

    def on_event(self, event: ViolationEvent) -> float:
        if event.session_id != self.session_id:
            raise ScoringFailure(
                f"event {event.id} belongs to session {event.session_id}",
                session_id=self.session_id,
                event_id=event.id,
            )
        try:
            weight = self.policy.weight_fixed(event.severity)
            confidence = to_fixed(event.confidence)
        except (KeyError, ArithmeticError, ValueError) as exc:
            raise ScoringFailure(f"cannot weigh event {event.id}: {exc}", self.session_id, event.id) from exc
        if not 0 <= confidence <= SCALE:
            raise ScoringFailure(f"confidence out of range for event {event.id}", self.session_id, event.id)

        self._advance(to_epoch_ms(event.timestamp))

        contribution = weight * confidence // SCALE
        previous = self._contributions.get(event.id)
        delta = contribution if previous is None else max(0, contribution - previous)
        self._contributions[event.id] = contribution if previous is None else max(previous, contribution)

        self._score = min(MAX_SCORE, max(0, self._score + delta))

        if event.severity == Severity.CRITICAL and event.id not in self._critical_ids:
            self._critical_ids.add(event.id)
            self._floor = max(self._floor, self._score)

        if self._score >= self._review_fixed:
            if not self._review_crossed:
                logger.info(f"Session {self.session_id} crossed review threshold at {self.score}")
            self._review_crossed = True
            self._floor = max(self._floor, self._review_fixed)

        self._peak = max(self._peak, self._score)
        self.samples.append(ScoreSample(
            session_id=self.session_id,
            timestamp=event.timestamp,
            score=self.score,
            triggering_event_id=event.id,
        ))
        return self.score


def ordered(events: Iterable[ViolationEvent]) -> List[ViolationEvent]:
    return sorted(events, key=lambda e: e.order_key)


def replay(session_id: str, events: Iterable[ViolationEvent], policy: ScoringPolicy,
           exclude_false_positives: bool = False) -> SuspicionScorer:
    """Rebuild a scorer from a persisted event log"""
    scorer = SuspicionScorer(session_id, policy)
    for event in ordered(events):
        if exclude_false_positives and event.false_positive:
            continue
        scorer.on_event(event)
    return scorer
