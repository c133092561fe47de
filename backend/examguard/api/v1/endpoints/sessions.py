from fastapi import APIRouter, Depends, Query, Response, WebSocket, WebSocketDisconnect, status
from typing import Optional
import asyncio
import logging

from ....core.exceptions import SessionNotFound
from ....monitoring.detectors import Observation
from ....monitoring.monitor import ProctoringMonitor
from ....monitoring.types import CATEGORIES, SessionState, Severity, ViolationKind
from ....monitoring.verification import VerificationEvidence
from ....schemas.report import SessionReport
from ....schemas.session import (
    DecisionRequest, EventAccepted, EventReport, EventReview, Heartbeat, ObservationAccepted,
    ObservationReport, Session, SessionCreate, SessionPage, VerificationRequest, Violation, ViolationPage,
)
from ....services.report_service import ReportService
from ...deps import get_monitor, get_report_service

logger = logging.getLogger(__name__)

router = APIRouter()

# Application close code for a live feed on an unknown session
WS_SESSION_NOT_FOUND = 4404


@router.post("", response_model=Session, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: SessionCreate,
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    snapshot = await monitor.create_session(payload.student_id, payload.exam_id)
    return Session.model_validate(snapshot)


@router.get("", response_model=SessionPage)
async def list_sessions(
    exam_id: Optional[str] = Query(None, alias="examId"),
    student_id: Optional[str] = Query(None, alias="studentId"),
    state: Optional[SessionState] = None,
    min_score: Optional[float] = Query(None, alias="minScore", ge=0, le=100),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    records, total = await monitor.store.search_sessions(
        states=[state] if state else None,
        exam_id=exam_id,
        student_id=student_id,
        min_score=min_score,
        limit=limit,
        offset=offset,
    )
    return SessionPage(
        items=[Session.model_validate(record) for record in records],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/suspicious", response_model=SessionPage)
async def list_suspicious_sessions(
    threshold: Optional[float] = Query(None, ge=0, le=100),
    exam_id: Optional[str] = Query(None, alias="examId"),
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    """Sessions at or above the review threshold, highest score first"""
    if threshold is None:
        threshold = monitor.scoring_policy.escalation.review_threshold
    records, total = await monitor.store.search_sessions(
        exam_id=exam_id,
        min_score=threshold,
        limit=limit,
        offset=offset,
        by_score=True,
    )
    return SessionPage(
        items=[Session.model_validate(record) for record in records],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{session_id}", response_model=Session)
async def get_session(session_id: str, monitor: ProctoringMonitor = Depends(get_monitor)):
    return Session.model_validate(await monitor.get_snapshot(session_id))


@router.post("/{session_id}/events", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def report_event(
    session_id: str,
    payload: EventReport,
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    """Ingest a violation the client already classified"""
    event = monitor.classifier.from_report(payload.model_dump())
    accepted = await monitor.ingest(session_id, event)
    return EventAccepted(event_id=accepted.event_id, sequence=accepted.sequence, merged=accepted.merged)


@router.post("/{session_id}/observations", response_model=ObservationAccepted,
             status_code=status.HTTP_202_ACCEPTED)
async def report_observation(
    session_id: str,
    payload: ObservationReport,
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    """Classify a raw detector reading and ingest whatever violations it implies"""
    accepted = await monitor.ingest_observation(session_id, Observation(**payload.model_dump()))
    return ObservationAccepted(accepted=[
        EventAccepted(event_id=a.event_id, sequence=a.sequence, merged=a.merged) for a in accepted
    ])


@router.get("/{session_id}/events", response_model=ViolationPage)
async def list_events(
    session_id: str,
    kind: Optional[ViolationKind] = None,
    severity: Optional[Severity] = None,
    category: Optional[str] = Query(None, pattern="^(" + "|".join(CATEGORIES) + ")$"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    await monitor.get_snapshot(session_id)
    events, total = await monitor.store.list_events(
        session_id,
        kind=kind.value if kind else None,
        severity=severity.value if severity else None,
        category=category,
        limit=limit,
        offset=offset,
    )
    return ViolationPage(
        items=[Violation.model_validate(event) for event in events],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.patch("/{session_id}/events/{event_id}/review", response_model=Violation)
async def review_event(
    session_id: str,
    event_id: str,
    payload: EventReview,
    monitor: ProctoringMonitor = Depends(get_monitor),
    reports: ReportService = Depends(get_report_service),
):
    event = await monitor.review_event(session_id, event_id, payload.false_positive,
                                       payload.reviewer, payload.notes)
    await reports.invalidate(session_id)
    return Violation.model_validate(event)


@router.post("/{session_id}/heartbeat", status_code=status.HTTP_204_NO_CONTENT)
async def heartbeat(
    session_id: str,
    payload: Optional[Heartbeat] = None,
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    await monitor.pulse(session_id, payload.observed_status if payload else None)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{session_id}/verify", response_model=Session)
async def verify_session(
    session_id: str,
    payload: VerificationRequest,
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    evidence = VerificationEvidence(
        face_match_confidence=payload.face_match_confidence,
        environment_checked=payload.environment_checked,
        metadata=payload.metadata,
    )
    snapshot = await monitor.verify(session_id, evidence, timeout=payload.timeout_seconds)
    return Session.model_validate(snapshot)


@router.post("/{session_id}/start", response_model=Session)
async def start_session(session_id: str, monitor: ProctoringMonitor = Depends(get_monitor)):
    return Session.model_validate(await monitor.start_exam(session_id))


@router.post("/{session_id}/submit", response_model=Session)
async def submit_session(session_id: str, monitor: ProctoringMonitor = Depends(get_monitor)):
    return Session.model_validate(await monitor.submit(session_id))


@router.get("/{session_id}/report", response_model=SessionReport)
async def get_report(session_id: str, reports: ReportService = Depends(get_report_service)):
    return await reports.build_report(session_id)


@router.post("/{session_id}/decision", response_model=Session)
async def record_decision(
    session_id: str,
    payload: DecisionRequest,
    monitor: ProctoringMonitor = Depends(get_monitor),
    reports: ReportService = Depends(get_report_service),
):
    snapshot = await monitor.record_decision(session_id, payload.decision, payload.reviewer, payload.notes)
    await reports.invalidate(session_id)
    return Session.model_validate(snapshot)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/{session_id}/live")
async def live_updates(
    websocket: WebSocket,
    session_id: str,
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    """
    Push violations, warnings, state changes and decisions for one session.

    The first message is a snapshot of the session; the feed closes after
    the session reaches a terminal state or when the client goes away.
    """
    queue = monitor.subscribe(session_id)
    try:
        snapshot = await monitor.get_snapshot(session_id)
    except SessionNotFound:
        monitor.unsubscribe(session_id, queue)
        await websocket.close(code=WS_SESSION_NOT_FOUND)
        return

    await websocket.accept()
    logger.info(f"Live feed opened for session {session_id}")
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        await websocket.send_json({
            "type": "snapshot",
            "session": Session.model_validate(snapshot).model_dump(mode="json", by_alias=True),
        })
        finished = snapshot.state.is_terminal
        while not finished:
            update = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({update, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if update not in done:
                update.cancel()
                return
            message = update.result()
            await websocket.send_json(message)
            finished = message.get("type") == "state" and SessionState(message["to"]).is_terminal
        await websocket.close()
    except WebSocketDisconnect:
        pass
    finally:
        disconnected.cancel()
        monitor.unsubscribe(session_id, queue)
        logger.info(f"Live feed closed for session {session_id}")
