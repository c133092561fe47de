from .proctoring_session import ProctoringSession
from .proctoring_violations import ProctoringViolation

__all__ = [
    "ProctoringSession",
    "ProctoringViolation",
]
