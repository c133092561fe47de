"""
Detector adapter boundary.

Sensing (face presence, gaze, audio, browser focus) happens outside this
service. An adapter only has to produce :class:`Observation` objects; the
classifier and everything downstream never see how they were produced.
"""
import abc
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..utils.timezone import utc_now

logger = logging.getLogger(__name__)


class Signal(str, Enum):
    FACE = "face"
    GAZE = "gaze"
    AUDIO = "audio"
    BROWSER = "browser"
    ENVIRONMENT = "environment"


@dataclass(frozen=True)
class Observation:
    detector_id: str
    signal: Signal
    detected_at: datetime = field(default_factory=utc_now)
    confidence: float = 1.0

    # face
    face_count: Optional[int] = None
    identity_match: Optional[bool] = None
    camera_blocked: Optional[bool] = None
    # gaze
    gaze_on_screen: Optional[bool] = None
    away_seconds: Optional[float] = None
    # audio
    voice_count: Optional[int] = None
    noise_level: Optional[float] = None
    # browser
    browser_event: Optional[str] = None
    # environment
    object_label: Optional[str] = None

    evidence_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class DetectorAdapter(abc.ABC):
    """Capability-typed source of observations for one signal"""

    signal: Signal

    def __init__(self, detector_id: str):
        self.detector_id = detector_id

    @abc.abstractmethod
    async def detect(self) -> Optional[Observation]:
        """Return the next observation, or None when nothing was seen"""

    async def close(self) -> None:
        return None


class QueueDetector(DetectorAdapter):
    """Adapter fed by pushed observations (client uploads, recorded sessions)"""

    def __init__(self, detector_id: str, signal: Signal):
        super().__init__(detector_id)
        self.signal = signal
        self._pending: asyncio.Queue = asyncio.Queue()

    def push(self, observation: Observation) -> None:
        if observation.signal != self.signal:
            raise ValueError(f"{self.detector_id} only accepts {self.signal.value} observations")
        self._pending.put_nowait(observation)

    async def detect(self) -> Optional[Observation]:
        try:
            return self._pending.get_nowait()
        except asyncio.QueueEmpty:
            return None


class DetectorPoller:
    """Drives one adapter at its own cadence and forwards what it sees"""

    def __init__(self, adapter: DetectorAdapter, forward: Callable[[Observation], Awaitable[Any]],
                 interval_seconds: float = 1.0):
        self.adapter = adapter
        self.forward = forward
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self) -> Optional[Observation]:
        observation = await self.adapter.detect()
        if observation is not None:
            await self.forward(observation)
        return observation

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A detector stopping must not stop the exam
                logger.error(f"Detector {self.adapter.detector_id} failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"detector:{self.adapter.detector_id}")
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.adapter.close()
