from sqlalchemy import select, update, func, text
from sqlalchemy.ext.asyncio import async_sessionmaker
from typing import Optional, List, Tuple
from datetime import datetime
import logging

from ..models.proctoring_session import ProctoringSession
from ..models.proctoring_violations import ProctoringViolation
from ..monitoring.types import (
    Decision, KIND_CATEGORY, SessionRecord, SessionState, Severity, ViolationEvent, ViolationKind,
)
from ..utils.timezone import ensure_utc

logger = logging.getLogger(__name__)

# Columns owned by the session worker; the decision columns are written separately
_WORKER_FIELDS = (
    "state", "started_at", "ended_at", "face_verified", "environment_checked", "verified_at",
    "verification_failure_reason", "score", "peak_score", "score_floor", "review_threshold_crossed",
    "critical_event_count", "score_discrepancy", "last_heartbeat_at", "last_observed_status",
    "termination_reason",
)


def _record_from_row(row: ProctoringSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        student_id=row.student_id,
        exam_id=row.exam_id,
        state=SessionState(row.state),
        created_at=ensure_utc(row.created_at),
        started_at=ensure_utc(row.started_at),
        ended_at=ensure_utc(row.ended_at),
        face_verified=bool(row.face_verified),
        environment_checked=bool(row.environment_checked),
        verified_at=ensure_utc(row.verified_at),
        verification_failure_reason=row.verification_failure_reason,
        score=row.score or 0.0,
        peak_score=row.peak_score or 0.0,
        score_floor=row.score_floor or 0.0,
        review_threshold_crossed=bool(row.review_threshold_crossed),
        critical_event_count=row.critical_event_count or 0,
        last_heartbeat_at=ensure_utc(row.last_heartbeat_at),
        last_observed_status=row.last_observed_status,
        decision=Decision(row.decision) if row.decision else None,
        decided_at=ensure_utc(row.decided_at),
        decided_by=row.decided_by,
        decision_notes=row.decision_notes,
        termination_reason=row.termination_reason,
        score_discrepancy=bool(row.score_discrepancy),
    )


def _event_from_row(row: ProctoringViolation) -> ViolationEvent:
    return ViolationEvent(
        id=row.id,
        session_id=row.session_id,
        sequence=row.sequence,
        timestamp=ensure_utc(row.timestamp),
        kind=ViolationKind(row.kind),
        severity=Severity(row.severity),
        confidence=row.confidence,
        description=row.description or "",
        detector=row.detector,
        ingested_at=ensure_utc(row.ingested_at),
        evidence_ref=row.evidence_ref,
        metadata=dict(row.violation_metadata or {}),
        merged_count=row.merged_count or 1,
        reviewed=bool(row.reviewed),
        false_positive=bool(row.false_positive),
    )


class SessionStore:
    """Durable session rows and the append-only violation log"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        async with self.session_factory() as db:
            row = ProctoringSession(
                id=record.id,
                student_id=record.student_id,
                exam_id=record.exam_id,
                state=record.state.value,
                created_at=record.created_at,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _record_from_row(row)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        async with self.session_factory() as db:
            row = await db.get(ProctoringSession, session_id)
            return _record_from_row(row) if row else None

    async def list_sessions(self, states: Optional[List[SessionState]] = None) -> List[SessionRecord]:
        records, _ = await self.search_sessions(states=states)
        return records

    async def search_sessions(self, states: Optional[List[SessionState]] = None, exam_id: Optional[str] = None,
                              student_id: Optional[str] = None, min_score: Optional[float] = None,
                              limit: Optional[int] = None, offset: int = 0,
                              by_score: bool = False) -> Tuple[List[SessionRecord], int]:
        """Sessions across exams and students; ``by_score`` puts the most suspicious first"""
        filters = []
        if states:
            filters.append(ProctoringSession.state.in_([s.value for s in states]))
        if exam_id:
            filters.append(ProctoringSession.exam_id == exam_id)
        if student_id:
            filters.append(ProctoringSession.student_id == student_id)
        if min_score is not None:
            filters.append(ProctoringSession.score >= min_score)

        async with self.session_factory() as db:
            total = (await db.execute(
                select(func.count()).select_from(ProctoringSession).filter(*filters)
            )).scalar_one()
            query = select(ProctoringSession).filter(*filters)
            if by_score:
                query = query.order_by(ProctoringSession.score.desc(), ProctoringSession.created_at)
            else:
                query = query.order_by(ProctoringSession.created_at)
            query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            result = await db.execute(query)
            return [_record_from_row(row) for row in result.scalars().all()], total

    async def save_session(self, record: SessionRecord) -> None:
        values = {}
        for name in _WORKER_FIELDS:
            value = getattr(record, name)
            values[name] = value.value if isinstance(value, SessionState) else value
        async with self.session_factory() as db:
            await db.execute(
                update(ProctoringSession)
                .where(ProctoringSession.id == record.id)
                .values(**values)
            )
            await db.commit()

    async def set_decision(self, session_id: str, decision: Decision, decided_at: datetime,
                           decided_by: Optional[str], notes: Optional[str]) -> bool:
        """Write the decision once; returns False if one was already recorded"""
        async with self.session_factory() as db:
            result = await db.execute(
                update(ProctoringSession)
                .where(ProctoringSession.id == session_id, ProctoringSession.decision.is_(None))
                .values(
                    decision=decision.value,
                    decided_at=decided_at,
                    decided_by=decided_by,
                    decision_notes=notes,
                )
            )
            await db.commit()
            return result.rowcount == 1

    async def append_event(self, event: ViolationEvent) -> None:
        async with self.session_factory() as db:
            db.add(ProctoringViolation(
                id=event.id,
                session_id=event.session_id,
                sequence=event.sequence,
                timestamp=event.timestamp,
                ingested_at=event.ingested_at,
                kind=event.kind.value,
                severity=event.severity.value,
                confidence=event.confidence,
                description=event.description,
                detector=event.detector,
                evidence_ref=event.evidence_ref,
                violation_metadata=event.metadata,
                merged_count=event.merged_count,
            ))
            await db.commit()

    async def update_merged_event(self, event: ViolationEvent) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(ProctoringViolation)
                .where(ProctoringViolation.id == event.id)
                .values(
                    severity=event.severity.value,
                    confidence=event.confidence,
                    merged_count=event.merged_count,
                )
            )
            await db.commit()

    async def list_events(self, session_id: str, kind: Optional[str] = None, severity: Optional[str] = None,
                          category: Optional[str] = None, limit: Optional[int] = None,
                          offset: int = 0) -> Tuple[List[ViolationEvent], int]:
        filters = [ProctoringViolation.session_id == session_id]
        if kind:
            filters.append(ProctoringViolation.kind == kind)
        if severity:
            filters.append(ProctoringViolation.severity == severity)
        if category:
            kinds = [k.value for k, c in KIND_CATEGORY.items() if c == category]
            filters.append(ProctoringViolation.kind.in_(kinds))

        async with self.session_factory() as db:
            total = (await db.execute(
                select(func.count()).select_from(ProctoringViolation).filter(*filters)
            )).scalar_one()
            query = (
                select(ProctoringViolation)
                .filter(*filters)
                .order_by(ProctoringViolation.timestamp, ProctoringViolation.sequence)
                .offset(offset)
            )
            if limit is not None:
                query = query.limit(limit)
            result = await db.execute(query)
            return [_event_from_row(row) for row in result.scalars().all()], total

    async def list_violations(self, exam_id: Optional[str] = None, student_id: Optional[str] = None,
                              kind: Optional[str] = None, severity: Optional[str] = None,
                              limit: Optional[int] = None,
                              offset: int = 0) -> Tuple[List[Tuple[ViolationEvent, str, str]], int]:
        """Newest violations first, each with the student and exam of its session"""
        filters = []
        if exam_id:
            filters.append(ProctoringSession.exam_id == exam_id)
        if student_id:
            filters.append(ProctoringSession.student_id == student_id)
        if kind:
            filters.append(ProctoringViolation.kind == kind)
        if severity:
            filters.append(ProctoringViolation.severity == severity)

        async with self.session_factory() as db:
            total = (await db.execute(
                select(func.count())
                .select_from(ProctoringViolation)
                .join(ProctoringSession, ProctoringViolation.session_id == ProctoringSession.id)
                .filter(*filters)
            )).scalar_one()
            query = (
                select(ProctoringViolation, ProctoringSession.student_id, ProctoringSession.exam_id)
                .join(ProctoringSession, ProctoringViolation.session_id == ProctoringSession.id)
                .filter(*filters)
                .order_by(ProctoringViolation.timestamp.desc(), ProctoringViolation.sequence.desc())
                .offset(offset)
            )
            if limit is not None:
                query = query.limit(limit)
            result = await db.execute(query)
            return [(_event_from_row(row), student, exam) for row, student, exam in result.all()], total

    async def get_event(self, session_id: str, event_id: str) -> Optional[ViolationEvent]:
        async with self.session_factory() as db:
            row = await db.get(ProctoringViolation, event_id)
            if row is None or row.session_id != session_id:
                return None
            return _event_from_row(row)

    async def last_sequence(self, session_id: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.max(ProctoringViolation.sequence))
                .filter(ProctoringViolation.session_id == session_id)
            )
            return result.scalar() or 0

    async def review_event(self, session_id: str, event_id: str, false_positive: bool,
                           reviewer: Optional[str], notes: Optional[str],
                           reviewed_at: datetime) -> Optional[ViolationEvent]:
        async with self.session_factory() as db:
            row = await db.get(ProctoringViolation, event_id)
            if row is None or row.session_id != session_id:
                return None
            row.reviewed = True
            row.false_positive = false_positive
            row.reviewed_by = reviewer
            row.review_notes = notes
            row.reviewed_at = reviewed_at
            await db.commit()
            await db.refresh(row)
            return _event_from_row(row)

    async def ping(self) -> bool:
        async with self.session_factory() as db:
            await db.execute(text("SELECT 1"))
        return True
