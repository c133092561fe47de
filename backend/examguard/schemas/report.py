from datetime import datetime
from typing import Dict, List, Optional

from ..monitoring.types import Decision, SessionState
from .session import CamelModel


class TimelineEntry(CamelModel):
    event_id: str
    sequence: int
    timestamp: datetime
    local_time: str
    kind: str
    severity: str
    category: str
    confidence: float
    description: str = ""
    merged_count: int = 1
    false_positive: bool = False
    score_after: float


class ReportSession(CamelModel):
    state: SessionState
    decision: Optional[Decision] = None
    termination_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None


class SessionReport(CamelModel):
    session_id: str
    student_id: str
    exam_id: str
    generated_at: datetime
    score: float
    peak_score: float
    adjusted_score: float
    recommendation: str
    events_by_category: Dict[str, int]
    severity_counts: Dict[str, int]
    total_events: int
    timeline: List[TimelineEntry]
    score_discrepancy: bool = False
    session: ReportSession
