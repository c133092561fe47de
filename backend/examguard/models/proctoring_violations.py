from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, Float, Boolean, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now


class ProctoringViolation(Base):
    """Append-only violation log, keyed by session id + sequence number"""
    __tablename__ = "proctoring_violations"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_violation_session_sequence"),
        Index("ix_violation_session_order", "session_id", "timestamp", "sequence"),
    )

    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("proctoring_sessions.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    ingested_at = Column(DateTime(timezone=True), default=utc_now)
    kind = Column(String, nullable=False, index=True)
    severity = Column(String, default="medium", index=True)
    confidence = Column(Float, default=1.0)
    description = Column(Text)
    detector = Column(String, nullable=False)
    evidence_ref = Column(String, nullable=True)
    violation_metadata = Column(JSON)
    merged_count = Column(Integer, default=1)

    # Human review only
    reviewed = Column(Boolean, default=False, index=True)
    false_positive = Column(Boolean, default=False)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_notes = Column(Text, nullable=True)

    session = relationship("ProctoringSession", back_populates="violations")

    def __repr__(self):
        return f"<ProctoringViolation {self.kind} #{self.sequence} for session {self.session_id}>"
