import abc
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .state_machine import VerificationResult
from .types import SessionSnapshot


@dataclass(frozen=True)
class VerificationEvidence:
    """What the pre-exam check reported for this attempt"""

    face_match_confidence: Optional[float] = None
    environment_checked: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class IdentityVerifier(abc.ABC):
    """External identity/environment verification step"""

    @abc.abstractmethod
    async def verify(self, session: SessionSnapshot, evidence: VerificationEvidence) -> VerificationResult:
        ...


class ThresholdVerifier(IdentityVerifier):
    """Accepts a face match above a confidence threshold plus a completed room check"""

    def __init__(self, face_match_threshold: float = 0.8):
        self.face_match_threshold = face_match_threshold

    async def verify(self, session: SessionSnapshot, evidence: VerificationEvidence) -> VerificationResult:
        confidence = evidence.face_match_confidence
        face_verified = confidence is not None and confidence > self.face_match_threshold
        if not face_verified:
            reason = (
                "No face match confidence supplied" if confidence is None
                else f"Face verification failed with confidence {confidence:.3f}"
            )
            return VerificationResult(False, evidence.environment_checked, reason)
        if not evidence.environment_checked:
            return VerificationResult(True, False, "Environment check was not completed")
        return VerificationResult(True, True)
