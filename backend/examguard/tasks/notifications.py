from examguard.core.celery_app import celery_app
from examguard.core.config import settings
from examguard.utils.timezone import utc_now
from typing import Optional
import json
import logging
import redis

logger = logging.getLogger(__name__)

NOTICE_TITLES = {
    "warning": "Suspicious activity detected",
    "flagged": "Exam submitted for review",
    "terminated": "Exam terminated",
}

_client = None


def _redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True
        )
    return _client


def _push(key: str, payload: dict, keep: int, ttl: int) -> bool:
    try:
        client = _redis()
        pipe = client.pipeline()
        pipe.lpush(key, json.dumps(payload, default=str))
        pipe.ltrim(key, 0, keep - 1)
        pipe.expire(key, ttl)
        pipe.execute()
        return True
    except Exception as e:
        logger.error(f"Failed to store notification under {key}: {e}")
        return False


@celery_app.task(name="send_session_notice")
def send_session_notice(session_id: str, student_id: str, exam_id: str, notice: str,
                        reason: Optional[str], score: float):
    """Deliver a warning/flagged/terminated notice to the student and the reviewers"""
    notification = {
        'type': f'session_{notice}',
        'title': NOTICE_TITLES.get(notice, notice.capitalize()),
        'message': reason or '',
        'session_id': session_id,
        'exam_id': exam_id,
        'score': score,
        'timestamp': utc_now().isoformat(),
        'read': False,
    }

    logger.info(f"Session {session_id}: {notice} notice for student {student_id}: {reason}")
    student_sent = _push(f"session_notices:{student_id}", notification, keep=20, ttl=86400)

    reviewer_sent = False
    if notice != "warning":
        reviewer_sent = _push(f"review_queue:{exam_id}", notification, keep=500, ttl=7 * 86400)

    return {
        'session_id': session_id,
        'notice': notice,
        'student_sent': student_sent,
        'reviewer_sent': reviewer_sent,
    }


@celery_app.task(name="raise_scoring_discrepancy_alarm")
def raise_scoring_discrepancy_alarm(session_id: str, event_id: str, error: str):
    """A logged event could not be scored; the session score needs a manual replay"""
    logger.error(f"Scoring discrepancy in session {session_id}: event {event_id} not scored ({error})")
    alarm = {
        'type': 'scoring_discrepancy',
        'session_id': session_id,
        'event_id': event_id,
        'error': error,
        'timestamp': utc_now().isoformat(),
    }
    stored = _push("scoring_alarms", alarm, keep=1000, ttl=30 * 86400)
    return {'session_id': session_id, 'event_id': event_id, 'stored': stored}
