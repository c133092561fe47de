from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..monitoring.detectors import Signal
from ..monitoring.types import Decision, SessionState, Severity, ViolationKind


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class SessionCreate(CamelModel):
    student_id: str = Field(..., min_length=1)
    exam_id: str = Field(..., min_length=1)


class Session(CamelModel):
    id: str
    student_id: str
    exam_id: str
    state: SessionState
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    face_verified: bool = False
    environment_checked: bool = False
    verified_at: Optional[datetime] = None
    verification_failure_reason: Optional[str] = None
    score: float = 0.0
    peak_score: float = 0.0
    review_threshold_crossed: bool = False
    critical_event_count: int = 0
    last_heartbeat_at: Optional[datetime] = None
    last_observed_status: Optional[str] = None
    decision: Optional[Decision] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decision_notes: Optional[str] = None
    termination_reason: Optional[str] = None
    score_discrepancy: bool = False


class EventReport(CamelModel):
    """A violation already classified by the client"""
    kind: str
    severity: Optional[str] = None
    confidence: Optional[float] = None
    description: str = ""
    detected_at: datetime
    detector: Optional[str] = None
    evidence_ref: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ObservationReport(CamelModel):
    """Raw detector reading, classified server-side"""
    detector_id: str = Field(..., min_length=1)
    signal: Signal
    detected_at: datetime
    confidence: float = 1.0
    face_count: Optional[int] = Field(None, ge=0)
    identity_match: Optional[bool] = None
    camera_blocked: Optional[bool] = None
    gaze_on_screen: Optional[bool] = None
    away_seconds: Optional[float] = Field(None, ge=0)
    voice_count: Optional[int] = Field(None, ge=0)
    noise_level: Optional[float] = Field(None, ge=0)
    browser_event: Optional[str] = None
    object_label: Optional[str] = None
    evidence_ref: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EventAccepted(CamelModel):
    event_id: str
    sequence: int
    merged: bool = False


class ObservationAccepted(CamelModel):
    accepted: List[EventAccepted]


class Heartbeat(CamelModel):
    observed_status: Optional[str] = None


class VerificationRequest(CamelModel):
    face_match_confidence: Optional[float] = Field(None, ge=0, le=1)
    environment_checked: bool = False
    timeout_seconds: Optional[float] = Field(None, gt=0, le=120)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DecisionRequest(CamelModel):
    decision: Decision
    reviewer: Optional[str] = None
    notes: Optional[str] = None


class EventReview(CamelModel):
    false_positive: bool
    reviewer: Optional[str] = None
    notes: Optional[str] = None


class Violation(CamelModel):
    id: str
    session_id: str
    sequence: int
    timestamp: datetime
    ingested_at: datetime
    kind: ViolationKind
    severity: Severity
    category: str
    confidence: float
    description: str = ""
    detector: str
    evidence_ref: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    merged_count: int = 1
    reviewed: bool = False
    false_positive: bool = False


class ViolationPage(CamelModel):
    items: List[Violation]
    total: int
    limit: int
    offset: int


class SessionPage(CamelModel):
    items: List[Session]
    total: int
    limit: int
    offset: int


class ViolationEntry(Violation):
    """A violation in a cross-session listing, tagged with its student and exam"""
    student_id: str
    exam_id: str


class ViolationEntryPage(CamelModel):
    items: List[ViolationEntry]
    total: int
    limit: int
    offset: int
