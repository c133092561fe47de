"""
Event ingestion.

``accept`` validates the target session, folds repeated observations of the
same condition into one event, assigns the per-session sequence number and
hands the event to the session's worker. It never awaits: persistence and
scoring happen on the worker, so sensing cannot block exam-taking.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Protocol, Tuple

from ..core.exceptions import StaleSession
from ..utils.timezone import to_epoch_ms, utc_now
from .types import Accepted, ClassifiedEvent, SessionState, ViolationEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventEnvelope:
    event: ViolationEvent
    merged: bool = False


class IngestChannel(Protocol):
    session_id: str
    dedup: "DedupWindow"
    # latest event time accepted so far
    watermark: Optional[datetime]

    @property
    def state(self) -> SessionState: ...

    @property
    def accepting_events(self) -> bool: ...

    def next_sequence(self) -> int: ...

    def submit(self, envelope: EventEnvelope) -> None: ...


class DedupWindow:
    """Open events per (kind, detector); a window slides with each repeat"""

    def __init__(self, window_seconds: float):
        self.window_ms = int(window_seconds * 1000)
        self._open: Dict[Tuple[str, str], Tuple[ViolationEvent, int]] = {}

    def match(self, key: Tuple[str, str], at_ms: int) -> Optional[ViolationEvent]:
        entry = self._open.get(key)
        if entry is None:
            return None
        event, last_seen_ms = entry
        if abs(at_ms - last_seen_ms) <= self.window_ms:
            return event
        return None

    def remember(self, key: Tuple[str, str], event: ViolationEvent, at_ms: int) -> None:
        previous = self._open.get(key)
        last_seen_ms = at_ms if previous is None or previous[0].id != event.id else max(previous[1], at_ms)
        self._open[key] = (event, last_seen_ms)

    def __len__(self) -> int:
        return len(self._open)


class EventIngestionPipeline:
    def __init__(self, clock=utc_now):
        self.clock = clock
        self.accepted = 0
        self.merged = 0

    def accept(self, channel: IngestChannel, event: ClassifiedEvent) -> Accepted:
        if not channel.accepting_events:
            raise StaleSession(
                f"Session {channel.session_id} is {channel.state.value}; "
                f"events are only accepted while the exam is in progress",
                session_id=channel.session_id,
            )

        detected_at = event.detected_at
        metadata = dict(event.metadata)
        if channel.watermark is not None and detected_at < channel.watermark:
            # a late report takes the session clock so timestamp order matches acceptance order
            metadata["reported_at"] = detected_at.isoformat()
            detected_at = channel.watermark
        else:
            channel.watermark = detected_at

        key = event.dedup_key
        at_ms = to_epoch_ms(detected_at)
        open_event = channel.dedup.match(key, at_ms)
        if open_event is not None:
            merged = open_event.merged_with(event)
            channel.dedup.remember(key, merged, at_ms)
            channel.submit(EventEnvelope(merged, merged=True))
            self.merged += 1
            logger.debug(f"Session {channel.session_id}: merged {event.kind.value} into event #{merged.sequence}")
            return Accepted(merged.id, merged.sequence, merged=True)

        violation = ViolationEvent(
            id=str(uuid.uuid4()),
            session_id=channel.session_id,
            sequence=channel.next_sequence(),
            timestamp=detected_at,
            kind=event.kind,
            severity=event.severity,
            confidence=event.confidence,
            description=event.description,
            detector=event.source,
            ingested_at=self.clock(),
            evidence_ref=event.evidence_ref,
            metadata=metadata,
        )
        channel.dedup.remember(key, violation, at_ms)
        channel.submit(EventEnvelope(violation))
        self.accepted += 1
        return Accepted(violation.id, violation.sequence)
