from .types import (
    Accepted, ClassifiedEvent, Decision, ScoreSample, SessionRecord, SessionSnapshot, SessionState,
    Severity, ViolationEvent, ViolationKind,
)
from .detectors import DetectorAdapter, DetectorPoller, Observation, QueueDetector, Signal
from .classifier import ViolationClassifier
from .scoring import ScoringPolicy, SuspicionScorer, replay
from .risk import EscalationPolicy, RiskLevel, assess_risk
from .state_machine import SessionStateMachine
from .heartbeat import HeartbeatSupervisor, LivenessPolicy

__all__ = [
    "Accepted",
    "ClassifiedEvent",
    "Decision",
    "ScoreSample",
    "SessionRecord",
    "SessionSnapshot",
    "SessionState",
    "Severity",
    "ViolationEvent",
    "ViolationKind",
    "DetectorAdapter",
    "DetectorPoller",
    "Observation",
    "QueueDetector",
    "Signal",
    "ViolationClassifier",
    "ScoringPolicy",
    "SuspicionScorer",
    "replay",
    "EscalationPolicy",
    "RiskLevel",
    "assess_risk",
    "SessionStateMachine",
    "HeartbeatSupervisor",
    "LivenessPolicy",
]
