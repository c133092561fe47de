"""
Builders shared by the unit and integration tests
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from examguard.core.cache import CacheManager
from examguard.monitoring.notifier import SessionNotifier
from examguard.monitoring.types import ClassifiedEvent, SessionSnapshot, Severity, ViolationEvent, ViolationKind

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


def at(seconds: float = 0.0) -> datetime:
    return T0 + timedelta(seconds=seconds)


def make_event(
    session_id: str = "s-1",
    sequence: int = 1,
    seconds: float = 0.0,
    kind: ViolationKind = ViolationKind.TAB_SWITCH,
    severity: Severity = Severity.MEDIUM,
    confidence: float = 1.0,
    event_id: Optional[str] = None,
    detector: str = "browser",
    false_positive: bool = False,
) -> ViolationEvent:
    return ViolationEvent(
        id=event_id or str(uuid.uuid4()),
        session_id=session_id,
        sequence=sequence,
        timestamp=at(seconds),
        kind=kind,
        severity=severity,
        confidence=confidence,
        description="",
        detector=detector,
        ingested_at=at(seconds),
        false_positive=false_positive,
    )


def classified(
    kind: ViolationKind = ViolationKind.TAB_SWITCH,
    severity: Severity = Severity.MEDIUM,
    seconds: float = 0.0,
    confidence: float = 1.0,
    detector: Optional[str] = None,
) -> ClassifiedEvent:
    return ClassifiedEvent(
        kind=kind,
        severity=severity,
        confidence=confidence,
        detected_at=at(seconds),
        detector=detector,
    )


class ManualClock:
    """Deterministic clock; tests move it forward explicitly"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingNotifier(SessionNotifier):
    def __init__(self):
        self.notices: List[Tuple[str, str, Optional[str]]] = []
        self.discrepancies: List[Tuple[str, str, str]] = []

    def session_notice(self, session: SessionSnapshot, notice: str, reason: Optional[str]) -> None:
        self.notices.append((session.id, notice, reason))

    def scoring_discrepancy(self, session_id: str, event_id: str, error: str) -> None:
        self.discrepancies.append((session_id, event_id, error))

    def kinds(self, session_id: str) -> List[str]:
        return [notice for sid, notice, _ in self.notices if sid == session_id]


class DictCache(CacheManager):
    """In-process stand-in for Redis"""

    def __init__(self):
        super().__init__(enabled=True)
        self.entries: Dict[str, Any] = {}

    async def aget(self, key: str) -> Optional[Any]:
        return self.entries.get(key)

    async def aset(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self.entries[key] = value
        return True

    async def adelete(self, key: str) -> bool:
        return self.entries.pop(key, None) is not None
