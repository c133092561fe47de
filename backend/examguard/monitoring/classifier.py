import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..core.exceptions import MalformedEvent
from ..utils.timezone import ensure_utc
from .detectors import Observation, Signal
from .types import DEFAULT_SEVERITY, ClassifiedEvent, Severity, ViolationKind

logger = logging.getLogger(__name__)

GAZE_AWAY_MIN_SECONDS = 3.0
GAZE_AWAY_HIGH_SECONDS = 10.0
NOISE_LEVEL_THRESHOLD = 0.3

BROWSER_EVENTS = {
    "tab_hidden": (ViolationKind.TAB_SWITCH, Severity.MEDIUM),
    "tab_switch": (ViolationKind.TAB_SWITCH, Severity.MEDIUM),
    "window_blur": (ViolationKind.TAB_SWITCH, Severity.MEDIUM),
    "copy": (ViolationKind.COPY_PASTE, Severity.MEDIUM),
    "cut": (ViolationKind.COPY_PASTE, Severity.MEDIUM),
    "paste": (ViolationKind.COPY_PASTE, Severity.MEDIUM),
    "dev_tools_open": (ViolationKind.UNAUTHORIZED_ACTION, Severity.HIGH),
    "right_click": (ViolationKind.UNAUTHORIZED_ACTION, Severity.LOW),
    "fullscreen_exit": (ViolationKind.UNAUTHORIZED_ACTION, Severity.LOW),
    "keyboard_shortcut": (ViolationKind.UNAUTHORIZED_ACTION, Severity.LOW),
}


@dataclass(frozen=True)
class ClassificationContext:
    session_id: str
    exam_id: Optional[str] = None
    student_id: Optional[str] = None


class ViolationClassifier:
    """Maps detector observations and reported events onto typed violations"""

    def classify(self, observation: Observation, context: ClassificationContext) -> List[ClassifiedEvent]:
        handler = {
            Signal.FACE: self._classify_face,
            Signal.GAZE: self._classify_gaze,
            Signal.AUDIO: self._classify_audio,
            Signal.BROWSER: self._classify_browser,
            Signal.ENVIRONMENT: self._classify_environment,
        }[observation.signal]
        self._check_confidence(observation.confidence)
        events = handler(observation)
        if events:
            logger.debug(f"Session {context.session_id}: {observation.detector_id} -> "
                         f"{', '.join(e.kind.value for e in events)}")
        return events

    def _event(self, observation: Observation, kind: ViolationKind, severity: Severity,
               description: str) -> ClassifiedEvent:
        return ClassifiedEvent(
            kind=kind,
            severity=severity,
            confidence=observation.confidence,
            detected_at=ensure_utc(observation.detected_at),
            description=description,
            detector=observation.detector_id,
            evidence_ref=observation.evidence_ref,
            metadata=dict(observation.metadata),
        )

    def _classify_face(self, obs: Observation) -> List[ClassifiedEvent]:
        events = []
        if obs.camera_blocked:
            events.append(self._event(obs, ViolationKind.CAMERA_BLOCKED, Severity.HIGH,
                                      "Camera view is blocked"))
        elif obs.face_count == 0:
            events.append(self._event(obs, ViolationKind.FACE_NOT_DETECTED, Severity.HIGH,
                                      "No face detected in camera feed"))
        elif obs.face_count is not None and obs.face_count > 1:
            events.append(self._event(obs, ViolationKind.MULTIPLE_FACES, Severity.CRITICAL,
                                      f"{obs.face_count} faces detected in camera feed"))
        if obs.identity_match is False:
            events.append(self._event(obs, ViolationKind.FACE_MISMATCH, Severity.CRITICAL,
                                      "Face does not match the verified candidate"))
        return events

    def _classify_gaze(self, obs: Observation) -> List[ClassifiedEvent]:
        if obs.gaze_on_screen is not False:
            return []
        away = obs.away_seconds or 0.0
        if away <= GAZE_AWAY_MIN_SECONDS:
            return []
        severity = Severity.HIGH if away > GAZE_AWAY_HIGH_SECONDS else Severity.MEDIUM
        return [self._event(obs, ViolationKind.GAZE_AWAY, severity,
                            f"Gaze away from screen for {away:g} seconds")]

    def _classify_audio(self, obs: Observation) -> List[ClassifiedEvent]:
        if obs.voice_count is not None and obs.voice_count > 1:
            return [self._event(obs, ViolationKind.MULTIPLE_VOICES, Severity.HIGH,
                                f"Multiple voices detected ({obs.voice_count})")]
        if obs.noise_level is not None and obs.noise_level > NOISE_LEVEL_THRESHOLD:
            return [self._event(obs, ViolationKind.AUDIO_ANOMALY, Severity.MEDIUM,
                                f"High background noise detected ({obs.noise_level:.2f})")]
        return []

    def _classify_browser(self, obs: Observation) -> List[ClassifiedEvent]:
        mapped = BROWSER_EVENTS.get(obs.browser_event or "")
        if mapped is None:
            return []
        kind, severity = mapped
        return [self._event(obs, kind, severity, f"Browser event: {obs.browser_event}")]

    def _classify_environment(self, obs: Observation) -> List[ClassifiedEvent]:
        if not obs.object_label:
            return []
        return [self._event(obs, ViolationKind.UNAUTHORIZED_OBJECT, Severity.HIGH,
                            f"Unauthorized object detected: {obs.object_label}")]

    @staticmethod
    def _check_confidence(confidence: Any) -> float:
        try:
            value = float(confidence)
        except (TypeError, ValueError):
            raise MalformedEvent(f"confidence must be a number, got {confidence!r}")
        if not 0.0 <= value <= 1.0:
            raise MalformedEvent(f"confidence must be within [0, 1], got {value}")
        return value

    def from_report(self, payload: Mapping[str, Any]) -> ClassifiedEvent:
        """Validate an event that was classified client-side"""
        raw_kind = payload.get("kind")
        try:
            kind = ViolationKind(raw_kind)
        except ValueError:
            raise MalformedEvent(f"Unknown violation kind: {raw_kind!r}")

        raw_severity = payload.get("severity")
        if raw_severity is None:
            severity = DEFAULT_SEVERITY[kind]
        else:
            try:
                severity = Severity(raw_severity)
            except ValueError:
                raise MalformedEvent(f"Unknown severity: {raw_severity!r}")

        raw_confidence = payload.get("confidence")
        confidence = 1.0 if raw_confidence is None else self._check_confidence(raw_confidence)

        detected_at = payload.get("detected_at")
        if not isinstance(detected_at, datetime):
            raise MalformedEvent("detected_at must be a timestamp")

        metadata: Dict[str, Any] = dict(payload.get("metadata") or {})
        return ClassifiedEvent(
            kind=kind,
            severity=severity,
            confidence=confidence,
            detected_at=ensure_utc(detected_at),
            description=payload.get("description") or "",
            detector=payload.get("detector"),
            evidence_ref=payload.get("evidence_ref"),
            metadata=metadata,
        )
