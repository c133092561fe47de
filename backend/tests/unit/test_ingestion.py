"""
Tests for event ingestion and the dedup window
"""
import pytest

from examguard.core.exceptions import StaleSession
from examguard.monitoring.ingestion import DedupWindow, EventIngestionPipeline
from examguard.monitoring.types import SessionState, Severity, ViolationKind

from ..factories import ManualClock, classified, make_event

pytestmark = pytest.mark.unit


class FakeChannel:
    def __init__(self, state=SessionState.IN_PROGRESS, window_seconds=2.0):
        self.session_id = "s-1"
        self.state = state
        self.dedup = DedupWindow(window_seconds)
        self.submitted = []
        self.watermark = None
        self._sequence = 0

    @property
    def accepting_events(self):
        return self.state == SessionState.IN_PROGRESS

    def next_sequence(self):
        self._sequence += 1
        return self._sequence

    def submit(self, envelope):
        self.submitted.append(envelope)


@pytest.fixture
def pipeline():
    return EventIngestionPipeline(clock=ManualClock())


@pytest.fixture
def channel():
    return FakeChannel()


class TestDedupWindow:

    def test_match_within_window(self):
        window = DedupWindow(2.0)
        event = make_event()
        window.remember(("tab_switch", "browser"), event, 1_000)
        assert window.match(("tab_switch", "browser"), 2_500) is event
        assert window.match(("tab_switch", "browser"), 3_000) is event

    def test_no_match_outside_window(self):
        window = DedupWindow(2.0)
        window.remember(("tab_switch", "browser"), make_event(), 1_000)
        assert window.match(("tab_switch", "browser"), 3_001) is None

    def test_keys_are_independent(self):
        window = DedupWindow(2.0)
        window.remember(("tab_switch", "browser"), make_event(), 1_000)
        assert window.match(("tab_switch", "other-tab"), 1_000) is None
        assert window.match(("gaze_away", "browser"), 1_000) is None

    def test_repeat_slides_window(self):
        window = DedupWindow(2.0)
        event = make_event()
        window.remember(("k", "d"), event, 0)
        window.remember(("k", "d"), event, 1_500)
        assert window.match(("k", "d"), 3_200) is event


class TestPipeline:

    def test_accept_assigns_sequence(self, pipeline, channel):
        first = pipeline.accept(channel, classified(kind=ViolationKind.TAB_SWITCH, seconds=0))
        second = pipeline.accept(channel, classified(kind=ViolationKind.COPY_PASTE, seconds=1))
        assert (first.sequence, second.sequence) == (1, 2)
        assert not first.merged
        assert [e.event.sequence for e in channel.submitted] == [1, 2]

    def test_event_fields_carried_over(self, pipeline, channel):
        pipeline.accept(channel, classified(kind=ViolationKind.GAZE_AWAY, severity=Severity.HIGH,
                                            confidence=0.6, detector="gaze-1", seconds=3))
        event = channel.submitted[0].event
        assert event.session_id == "s-1"
        assert event.kind == ViolationKind.GAZE_AWAY
        assert event.severity == Severity.HIGH
        assert event.confidence == 0.6
        assert event.detector == "gaze-1"
        assert event.timestamp == classified(seconds=3).detected_at

    def test_repeated_condition_merges(self, pipeline, channel):
        first = pipeline.accept(channel, classified(kind=ViolationKind.GAZE_AWAY, seconds=0))
        second = pipeline.accept(channel, classified(kind=ViolationKind.GAZE_AWAY, seconds=0.5,
                                                     severity=Severity.HIGH, confidence=0.7))
        assert second.merged
        assert second.event_id == first.event_id
        assert second.sequence == first.sequence
        merged = channel.submitted[-1]
        assert merged.merged
        assert merged.event.merged_count == 2
        assert merged.event.severity == Severity.HIGH
        assert merged.event.confidence == 1.0
        assert pipeline.merged == 1

    def test_repeat_after_window_is_new_event(self, pipeline, channel):
        pipeline.accept(channel, classified(kind=ViolationKind.GAZE_AWAY, seconds=0))
        later = pipeline.accept(channel, classified(kind=ViolationKind.GAZE_AWAY, seconds=5))
        assert not later.merged
        assert later.sequence == 2

    def test_different_detectors_do_not_merge(self, pipeline, channel):
        pipeline.accept(channel, classified(kind=ViolationKind.MULTIPLE_FACES, detector="cam-1"))
        other = pipeline.accept(channel, classified(kind=ViolationKind.MULTIPLE_FACES, detector="cam-2"))
        assert not other.merged

    @pytest.mark.parametrize("state", [
        SessionState.PENDING,
        SessionState.VERIFIED,
        SessionState.COMPLETED,
        SessionState.FLAGGED,
        SessionState.TERMINATED,
    ])
    def test_rejected_outside_exam(self, pipeline, state):
        channel = FakeChannel(state=state)
        with pytest.raises(StaleSession):
            pipeline.accept(channel, classified())
        assert channel.submitted == []

    def test_late_report_takes_session_clock(self, pipeline, channel):
        pipeline.accept(channel, classified(kind=ViolationKind.FACE_NOT_DETECTED, seconds=600))
        late = pipeline.accept(channel, classified(kind=ViolationKind.CAMERA_BLOCKED, seconds=0))
        event = channel.submitted[-1].event
        assert late.sequence == 2
        assert event.timestamp == classified(seconds=600).detected_at
        assert event.metadata["reported_at"] == classified(seconds=0).detected_at.isoformat()
        assert channel.watermark == classified(seconds=600).detected_at

    def test_in_order_reports_advance_watermark(self, pipeline, channel):
        pipeline.accept(channel, classified(seconds=5))
        pipeline.accept(channel, classified(kind=ViolationKind.COPY_PASTE, seconds=9))
        assert channel.watermark == classified(seconds=9).detected_at
        assert "reported_at" not in channel.submitted[-1].event.metadata
