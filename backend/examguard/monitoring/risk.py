"""
Risk bands shared by the session state machine and the report builder.

Both sides call :func:`assess_risk` so the reviewer UI and the automated
escalation policy never disagree on what a score means.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .types import Severity


class RiskLevel(str, Enum):
    CLEAN = "Clean"
    LOW = "Low Risk"
    MEDIUM = "Medium Risk"
    HIGH = "High Risk"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.CLEAN: 0,
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
}


@dataclass(frozen=True)
class EscalationPolicy:
    warning_threshold: float = 25.0
    review_threshold: float = 50.0
    terminate_threshold: float = 75.0
    auto_disqualify_enabled: bool = False
    disqualify_threshold: float = 90.0

    def __post_init__(self):
        if not (0 <= self.warning_threshold <= self.review_threshold
                <= self.terminate_threshold <= self.disqualify_threshold <= 100):
            raise ValueError("escalation thresholds must be ordered within [0, 100]")

    @classmethod
    def from_settings(cls, settings) -> "EscalationPolicy":
        return cls(
            warning_threshold=settings.proctor_warning_threshold,
            review_threshold=settings.proctor_review_threshold,
            terminate_threshold=settings.proctor_terminate_threshold,
            auto_disqualify_enabled=settings.proctor_auto_disqualify_enabled,
            disqualify_threshold=settings.proctor_disqualify_threshold,
        )


def assess_risk(score: float, severities: Iterable[Severity] = (), policy: EscalationPolicy = EscalationPolicy()) -> RiskLevel:
    """Map a score plus the severities seen so far onto a risk band.

    Any critical event lifts the band to at least ``Medium Risk``, the same
    rule that flags a submission after a critical event.
    """
    if score >= policy.terminate_threshold:
        level = RiskLevel.HIGH
    elif score >= policy.review_threshold:
        level = RiskLevel.MEDIUM
    elif score >= policy.warning_threshold:
        level = RiskLevel.LOW
    else:
        level = RiskLevel.CLEAN

    if level.rank < RiskLevel.MEDIUM.rank and any(Severity(s) == Severity.CRITICAL for s in severities):
        level = RiskLevel.MEDIUM
    return level


def requires_review(level: RiskLevel) -> bool:
    return level.rank >= RiskLevel.MEDIUM.rank
