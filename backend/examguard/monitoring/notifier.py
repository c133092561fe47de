import abc
import logging
from typing import Optional

from .types import SessionSnapshot

logger = logging.getLogger(__name__)


class SessionNotifier(abc.ABC):
    """Delivers session notices to students and reviewers"""

    @abc.abstractmethod
    def session_notice(self, session: SessionSnapshot, notice: str, reason: Optional[str]) -> None:
        ...

    @abc.abstractmethod
    def scoring_discrepancy(self, session_id: str, event_id: str, error: str) -> None:
        ...


class CeleryNotifier(SessionNotifier):
    """Hands notices to the Celery notification queue"""

    def session_notice(self, session: SessionSnapshot, notice: str, reason: Optional[str]) -> None:
        from ..tasks.notifications import send_session_notice

        try:
            send_session_notice.delay(
                session.id, session.student_id, session.exam_id, notice, reason, session.score,
            )
        except Exception as e:
            logger.error(f"Failed to dispatch {notice} notice for session {session.id}: {e}")

    def scoring_discrepancy(self, session_id: str, event_id: str, error: str) -> None:
        from ..tasks.notifications import raise_scoring_discrepancy_alarm

        try:
            raise_scoring_discrepancy_alarm.delay(session_id, event_id, error)
        except Exception as e:
            logger.error(f"Failed to dispatch scoring discrepancy alarm for session {session_id}: {e}")
