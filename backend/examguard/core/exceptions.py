from typing import Optional


class ProctoringError(Exception):
    """Base class for caller-facing monitoring errors"""

    status_code = 400
    code = "proctoring_error"

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "session_id": self.session_id,
        }


class SessionNotFound(ProctoringError):
    status_code = 404
    code = "session_not_found"


class EventNotFound(SessionNotFound):
    code = "event_not_found"


class StaleSession(ProctoringError):
    """Signal or pulse for a session that is not accepting it"""

    status_code = 409
    code = "stale_session"


class SessionGone(StaleSession):
    """Session already reached a terminal state"""

    status_code = 410
    code = "session_gone"


class InvalidTransition(ProctoringError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, message: str, session_id: Optional[str] = None,
                 current_state: Optional[str] = None, requested: Optional[str] = None):
        super().__init__(message, session_id)
        self.current_state = current_state
        self.requested = requested

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_state"] = self.current_state
        data["requested"] = self.requested
        return data


class VerificationFailed(ProctoringError):
    status_code = 422
    code = "verification_failed"


class MalformedEvent(ProctoringError):
    status_code = 400
    code = "malformed_event"


class ScoringFailure(Exception):
    """Internal scoring error; recovered by the session worker, never surfaced to detectors"""

    def __init__(self, message: str, session_id: Optional[str] = None, event_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id
        self.event_id = event_id
