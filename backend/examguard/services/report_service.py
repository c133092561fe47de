"""
Reporting aggregator.

Reports are derived entirely from the persisted event log and the session
row; the score trajectory in the timeline comes from a replay of the log.
Reports for finished sessions do not change except through reviews, so they
are cached once the worker has drained, until a review invalidates them.
"""
import logging
from collections import Counter
from typing import Optional

from ..core.cache import CacheManager
from ..monitoring.monitor import ProctoringMonitor
from ..monitoring.risk import assess_risk
from ..monitoring.scoring import ordered, replay
from ..monitoring.types import CATEGORIES, Severity
from ..schemas.report import ReportSession, SessionReport, TimelineEntry
from ..utils.timezone import format_local_time, utc_now

logger = logging.getLogger(__name__)


def report_cache_key(session_id: str) -> str:
    return f"report:{session_id}"


class ReportService:
    def __init__(self, monitor: ProctoringMonitor, cache: CacheManager, ttl: Optional[int] = None):
        self.monitor = monitor
        self.cache = cache
        self.ttl = ttl

    async def build_report(self, session_id: str) -> SessionReport:
        # a terminal session whose worker is still draining has not settled yet
        draining = self.monitor.has_live_worker(session_id)
        snapshot = await self.monitor.get_snapshot(session_id)
        settled = snapshot.state.is_terminal and not draining

        if settled:
            cached = await self.cache.aget(report_cache_key(session_id))
            if cached:
                logger.debug(f"Report cache hit for session {session_id}")
                return SessionReport.model_validate(cached)

        events, _ = await self.monitor.store.list_events(session_id)
        policy = self.monitor.scoring_policy
        trajectory = replay(session_id, events, policy)
        adjusted = replay(session_id, events, policy, exclude_false_positives=True)
        score_after = {sample.triggering_event_id: sample.score for sample in trajectory.samples}

        by_category = Counter(event.category for event in events)
        by_severity = Counter(event.severity.value for event in events)

        score = snapshot.score
        recommendation = assess_risk(score, [event.severity for event in events], policy.escalation)

        duration = None
        if snapshot.started_at is not None:
            end = snapshot.ended_at or utc_now()
            duration = round((end - snapshot.started_at).total_seconds(), 3)

        report = SessionReport(
            session_id=session_id,
            student_id=snapshot.student_id,
            exam_id=snapshot.exam_id,
            generated_at=utc_now(),
            score=score,
            peak_score=max(snapshot.peak_score, trajectory.peak),
            adjusted_score=adjusted.score,
            recommendation=recommendation.value,
            events_by_category={category: by_category.get(category, 0) for category in CATEGORIES},
            severity_counts={severity.value: by_severity.get(severity.value, 0) for severity in Severity},
            total_events=len(events),
            timeline=[
                TimelineEntry(
                    event_id=event.id,
                    sequence=event.sequence,
                    timestamp=event.timestamp,
                    local_time=format_local_time(event.timestamp),
                    kind=event.kind.value,
                    severity=event.severity.value,
                    category=event.category,
                    confidence=event.confidence,
                    description=event.description,
                    merged_count=event.merged_count,
                    false_positive=event.false_positive,
                    score_after=score_after.get(event.id, 0.0),
                )
                for event in ordered(events)
            ],
            score_discrepancy=snapshot.score_discrepancy,
            session=ReportSession(
                state=snapshot.state,
                decision=snapshot.decision,
                termination_reason=snapshot.termination_reason,
                started_at=snapshot.started_at,
                ended_at=snapshot.ended_at,
                duration_seconds=duration,
            ),
        )

        if settled:
            await self.cache.aset(report_cache_key(session_id), report.model_dump(mode="json"), ttl=self.ttl)
        return report

    async def invalidate(self, session_id: str) -> None:
        await self.cache.adelete(report_cache_key(session_id))
