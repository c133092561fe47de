from sqlalchemy import Column, String, DateTime, Float, Text, Boolean, Integer
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now


class ProctoringSession(Base):
    __tablename__ = "proctoring_sessions"

    id = Column(String, primary_key=True, index=True)
    student_id = Column(String, index=True, nullable=False)
    exam_id = Column(String, index=True, nullable=False)
    state = Column(String, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    face_verified = Column(Boolean, default=False)
    environment_checked = Column(Boolean, default=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verification_failure_reason = Column(String, nullable=True)

    score = Column(Float, default=0.0)
    peak_score = Column(Float, default=0.0)
    score_floor = Column(Float, default=0.0)
    review_threshold_crossed = Column(Boolean, default=False)
    critical_event_count = Column(Integer, default=0)
    score_discrepancy = Column(Boolean, default=False)

    last_heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    last_observed_status = Column(String, nullable=True)

    # Written once, only through SessionStore.set_decision
    decision = Column(String, nullable=True, index=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    decided_by = Column(String, nullable=True)
    decision_notes = Column(Text, nullable=True)

    termination_reason = Column(Text, nullable=True)

    violations = relationship(
        "ProctoringViolation",
        back_populates="session",
        order_by="ProctoringViolation.sequence",
    )

    def __repr__(self):
        return f"<ProctoringSession {self.id} {self.state} score={self.score}>"
