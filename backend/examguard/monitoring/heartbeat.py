"""
Liveness supervision.

Clients pulse every ``interval_seconds``. An independent sweep looks for
sessions that have been silent for ``missed_intervals`` intervals and
reports them as stalled; the monitor turns each stall into an ordinary
``heartbeat_timeout`` violation so liveness shares the scoring policy and
the audit trail with every other signal. After ``max_timeouts`` consecutive
stalls without a pulse the session is reported as abandoned.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from ..utils.timezone import ensure_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LivenessPolicy:
    interval_seconds: float = 30.0
    missed_intervals: int = 3
    max_timeouts: int = 3
    sweep_seconds: float = 10.0

    def __post_init__(self):
        if self.interval_seconds <= 0 or self.sweep_seconds <= 0:
            raise ValueError("heartbeat interval and sweep cadence must be positive")
        if self.missed_intervals < 1 or self.max_timeouts < 1:
            raise ValueError("missed_intervals and max_timeouts must be at least 1")

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.interval_seconds * self.missed_intervals)

    @classmethod
    def from_settings(cls, settings) -> "LivenessPolicy":
        return cls(
            interval_seconds=settings.proctor_heartbeat_interval_seconds,
            missed_intervals=settings.proctor_heartbeat_missed_intervals,
            max_timeouts=settings.proctor_heartbeat_max_timeouts,
            sweep_seconds=settings.proctor_heartbeat_sweep_seconds,
        )


class LivenessVerdict(str, Enum):
    STALLED = "stalled"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class LivenessAlert:
    session_id: str
    verdict: LivenessVerdict
    at: datetime
    last_pulse_at: datetime
    consecutive_timeouts: int

    @property
    def silent_seconds(self) -> float:
        return (self.at - self.last_pulse_at).total_seconds()


@dataclass
class _Liveness:
    last_pulse_at: datetime
    last_mark_at: datetime
    consecutive_timeouts: int = 0


class HeartbeatSupervisor:
    def __init__(self, policy: LivenessPolicy, clock: Callable[[], datetime] = utc_now):
        self.policy = policy
        self.clock = clock
        self._sessions: Dict[str, _Liveness] = {}
        self._task: Optional[asyncio.Task] = None

    def watch(self, session_id: str, since: Optional[datetime] = None) -> None:
        since = ensure_utc(since) or self.clock()
        self._sessions[session_id] = _Liveness(last_pulse_at=since, last_mark_at=since)

    def forget(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug(f"Stopped liveness supervision for session {session_id}")

    def is_watching(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def watched_count(self) -> int:
        return len(self._sessions)

    def pulse(self, session_id: str, at: Optional[datetime] = None) -> bool:
        liveness = self._sessions.get(session_id)
        if liveness is None:
            return False
        at = ensure_utc(at) or self.clock()
        if at > liveness.last_pulse_at:
            liveness.last_pulse_at = at
        liveness.last_mark_at = max(liveness.last_mark_at, at)
        liveness.consecutive_timeouts = 0
        return True

    def sweep(self, now: Optional[datetime] = None) -> List[LivenessAlert]:
        now = ensure_utc(now) or self.clock()
        alerts = []
        for session_id, liveness in list(self._sessions.items()):
            if now - liveness.last_mark_at < self.policy.timeout:
                continue
            liveness.consecutive_timeouts += 1
            liveness.last_mark_at = now
            verdict = (
                LivenessVerdict.ABANDONED
                if liveness.consecutive_timeouts >= self.policy.max_timeouts
                else LivenessVerdict.STALLED
            )
            alerts.append(LivenessAlert(
                session_id=session_id,
                verdict=verdict,
                at=now,
                last_pulse_at=liveness.last_pulse_at,
                consecutive_timeouts=liveness.consecutive_timeouts,
            ))
            logger.warning(
                f"Session {session_id} {verdict.value}: no heartbeat since "
                f"{liveness.last_pulse_at.isoformat()} ({liveness.consecutive_timeouts} timeout(s))"
            )
        return alerts

    async def _run(self, handle: Callable[[Optional[datetime]], Awaitable[List[LivenessAlert]]]) -> None:
        while True:
            await asyncio.sleep(self.policy.sweep_seconds)
            try:
                await handle(None)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Heartbeat sweep failed: {e}", exc_info=True)

    def start(self, handle: Callable[[Optional[datetime]], Awaitable[List[LivenessAlert]]]) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(handle), name="heartbeat-supervisor")
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
