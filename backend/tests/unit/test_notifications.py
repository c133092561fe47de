import json

import pytest

from examguard.monitoring.notifier import CeleryNotifier
from examguard.monitoring.types import SessionRecord
from examguard.tasks import notifications

pytestmark = pytest.mark.unit


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def lpush(self, key, value):
        self.ops.append(("lpush", key, value))

    def ltrim(self, key, start, end):
        self.ops.append(("ltrim", key, start, end))

    def expire(self, key, ttl):
        self.ops.append(("expire", key, ttl))

    def execute(self):
        for op in self.ops:
            if op[0] == "lpush":
                self.store.setdefault(op[1], []).insert(0, json.loads(op[2]))


class FakeRedis:
    def __init__(self):
        self.lists = {}

    def pipeline(self):
        return FakePipeline(self.lists)


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(notifications, "_redis", lambda: client)
    return client


class TestSessionNotices:

    def test_warning_goes_to_student_only(self, fake_redis):
        result = notifications.send_session_notice("s-1", "student-1", "exam-1", "warning", "score 25", 25.0)
        assert result["student_sent"] and not result["reviewer_sent"]
        assert list(fake_redis.lists) == ["session_notices:student-1"]
        assert fake_redis.lists["session_notices:student-1"][0]["type"] == "session_warning"

    def test_termination_reaches_review_queue(self, fake_redis):
        notifications.send_session_notice("s-1", "student-1", "exam-1", "terminated", "score 75", 75.0)
        notice = fake_redis.lists["review_queue:exam-1"][0]
        assert notice["title"] == "Exam terminated"
        assert notice["score"] == 75.0

    def test_redis_failure_is_reported_not_raised(self, monkeypatch):
        def unavailable():
            raise ConnectionError("redis down")

        monkeypatch.setattr(notifications, "_redis", unavailable)
        result = notifications.send_session_notice("s-1", "student-1", "exam-1", "flagged", None, 52.0)
        assert result["student_sent"] is False
        assert result["reviewer_sent"] is False


class TestCeleryNotifier:

    def test_dispatches_through_celery(self, fake_redis):
        record = SessionRecord(id="s-1", student_id="student-1", exam_id="exam-1", score=80.0)
        CeleryNotifier().session_notice(record.snapshot(), "flagged", "Submitted with high risk")
        assert fake_redis.lists["review_queue:exam-1"][0]["message"] == "Submitted with high risk"

    def test_scoring_discrepancy_alarm(self, fake_redis):
        CeleryNotifier().scoring_discrepancy("s-1", "e-1", "weights unavailable")
        alarm = fake_redis.lists["scoring_alarms"][0]
        assert alarm["event_id"] == "e-1"
        assert alarm["error"] == "weights unavailable"
