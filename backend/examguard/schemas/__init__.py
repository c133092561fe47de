from .session import (
    SessionCreate, Session, EventReport, ObservationReport, EventAccepted, ObservationAccepted,
    Heartbeat, VerificationRequest, DecisionRequest, EventReview, Violation, ViolationPage,
)
from .report import SessionReport, TimelineEntry, ReportSession

__all__ = [
    "SessionCreate",
    "Session",
    "EventReport",
    "ObservationReport",
    "EventAccepted",
    "ObservationAccepted",
    "Heartbeat",
    "VerificationRequest",
    "DecisionRequest",
    "EventReview",
    "Violation",
    "ViolationPage",
    "SessionReport",
    "TimelineEntry",
    "ReportSession",
]
