from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ViolationKind(str, Enum):
    FACE_NOT_DETECTED = "face_not_detected"
    MULTIPLE_FACES = "multiple_faces"
    FACE_MISMATCH = "face_mismatch"
    GAZE_AWAY = "gaze_away"
    TAB_SWITCH = "tab_switch"
    COPY_PASTE = "copy_paste"
    UNAUTHORIZED_ACTION = "unauthorized_action"
    AUDIO_ANOMALY = "audio_anomaly"
    MULTIPLE_VOICES = "multiple_voices"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    CAMERA_BLOCKED = "camera_blocked"
    UNAUTHORIZED_OBJECT = "unauthorized_object"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class SessionState(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FLAGGED = "flagged"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FLAGGED, SessionState.TERMINATED})


class Decision(str, Enum):
    CLEARED = "cleared"
    WARNING = "warning"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    DISQUALIFIED = "disqualified"


# Report grouping; mirrors the signal a detector adapter reports on
KIND_CATEGORY = {
    ViolationKind.FACE_NOT_DETECTED: "face",
    ViolationKind.MULTIPLE_FACES: "face",
    ViolationKind.FACE_MISMATCH: "face",
    ViolationKind.GAZE_AWAY: "gaze",
    ViolationKind.AUDIO_ANOMALY: "audio",
    ViolationKind.MULTIPLE_VOICES: "audio",
    ViolationKind.TAB_SWITCH: "browser",
    ViolationKind.COPY_PASTE: "browser",
    ViolationKind.UNAUTHORIZED_ACTION: "browser",
    ViolationKind.HEARTBEAT_TIMEOUT: "liveness",
    ViolationKind.CAMERA_BLOCKED: "environment",
    ViolationKind.UNAUTHORIZED_OBJECT: "environment",
}

CATEGORIES = ("face", "gaze", "audio", "browser", "liveness", "environment")

DEFAULT_SEVERITY = {
    ViolationKind.FACE_NOT_DETECTED: Severity.HIGH,
    ViolationKind.MULTIPLE_FACES: Severity.CRITICAL,
    ViolationKind.FACE_MISMATCH: Severity.CRITICAL,
    ViolationKind.GAZE_AWAY: Severity.MEDIUM,
    ViolationKind.TAB_SWITCH: Severity.MEDIUM,
    ViolationKind.COPY_PASTE: Severity.MEDIUM,
    ViolationKind.UNAUTHORIZED_ACTION: Severity.MEDIUM,
    ViolationKind.AUDIO_ANOMALY: Severity.MEDIUM,
    ViolationKind.MULTIPLE_VOICES: Severity.HIGH,
    ViolationKind.HEARTBEAT_TIMEOUT: Severity.HIGH,
    ViolationKind.CAMERA_BLOCKED: Severity.HIGH,
    ViolationKind.UNAUTHORIZED_OBJECT: Severity.HIGH,
}


@dataclass(frozen=True)
class ClassifiedEvent:
    """Output of the classifier, not yet accepted by ingestion"""

    kind: ViolationKind
    severity: Severity
    confidence: float
    detected_at: datetime
    description: str = ""
    detector: Optional[str] = None
    evidence_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return self.detector or KIND_CATEGORY[self.kind]

    @property
    def dedup_key(self) -> Tuple[str, str]:
        return (self.kind.value, self.source)


@dataclass(frozen=True)
class ViolationEvent:
    id: str
    session_id: str
    sequence: int
    timestamp: datetime
    kind: ViolationKind
    severity: Severity
    confidence: float
    description: str
    detector: str
    ingested_at: datetime
    evidence_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    merged_count: int = 1
    reviewed: bool = False
    false_positive: bool = False

    @property
    def category(self) -> str:
        return KIND_CATEGORY[self.kind]

    @property
    def order_key(self) -> Tuple[datetime, int]:
        return (self.timestamp, self.sequence)

    def merged_with(self, other: ClassifiedEvent) -> "ViolationEvent":
        severity = other.severity if other.severity.rank > self.severity.rank else self.severity
        return replace(
            self,
            severity=severity,
            confidence=max(self.confidence, other.confidence),
            merged_count=self.merged_count + 1,
        )


@dataclass(frozen=True)
class ScoreSample:
    session_id: str
    timestamp: datetime
    score: float
    triggering_event_id: Optional[str]


@dataclass
class SessionRecord:
    """Mutable session row, written only by the session's worker"""

    id: str
    student_id: str
    exam_id: str
    state: SessionState = SessionState.PENDING
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    face_verified: bool = False
    environment_checked: bool = False
    verified_at: Optional[datetime] = None
    verification_failure_reason: Optional[str] = None
    score: float = 0.0
    peak_score: float = 0.0
    score_floor: float = 0.0
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

    def snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(**self.__dict__)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only copy handed to API callers and the report builder"""

    id: str
    student_id: str
    exam_id: str
    state: SessionState
    created_at: Optional[datetime]
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    face_verified: bool
    environment_checked: bool
    verified_at: Optional[datetime]
    verification_failure_reason: Optional[str]
    score: float
    peak_score: float
    score_floor: float
    review_threshold_crossed: bool
    critical_event_count: int
    last_heartbeat_at: Optional[datetime]
    last_observed_status: Optional[str]
    decision: Optional[Decision]
    decided_at: Optional[datetime]
    decided_by: Optional[str]
    decision_notes: Optional[str]
    termination_reason: Optional[str]
    score_discrepancy: bool


@dataclass(frozen=True)
class Accepted:
    event_id: str
    sequence: int
    merged: bool = False
