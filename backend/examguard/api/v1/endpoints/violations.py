from fastapi import APIRouter, Depends, Query
from typing import Optional

from ....monitoring.monitor import ProctoringMonitor
from ....monitoring.types import Severity, ViolationKind
from ....schemas.session import Violation, ViolationEntry, ViolationEntryPage
from ...deps import get_monitor

router = APIRouter()


async def _violation_page(
    monitor: ProctoringMonitor,
    exam_id: Optional[str],
    student_id: Optional[str],
    kind: Optional[ViolationKind],
    severity: Optional[Severity],
    limit: int,
    offset: int,
) -> ViolationEntryPage:
    rows, total = await monitor.store.list_violations(
        exam_id=exam_id,
        student_id=student_id,
        kind=kind.value if kind else None,
        severity=severity.value if severity else None,
        limit=limit,
        offset=offset,
    )
    return ViolationEntryPage(
        items=[
            ViolationEntry(**Violation.model_validate(event).model_dump(), student_id=student, exam_id=exam)
            for event, student, exam in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("", response_model=ViolationEntryPage)
async def list_violations(
    exam_id: Optional[str] = Query(None, alias="examId"),
    student_id: Optional[str] = Query(None, alias="studentId"),
    kind: Optional[ViolationKind] = None,
    severity: Optional[Severity] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    """Reviewer dashboard: newest violations across every session"""
    return await _violation_page(monitor, exam_id, student_id, kind, severity, limit, offset)


@router.get("/exam/{exam_id}", response_model=ViolationEntryPage)
async def list_exam_violations(
    exam_id: str,
    kind: Optional[ViolationKind] = None,
    severity: Optional[Severity] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    return await _violation_page(monitor, exam_id, None, kind, severity, limit, offset)


@router.get("/student/{student_id}", response_model=ViolationEntryPage)
async def list_student_violations(
    student_id: str,
    kind: Optional[ViolationKind] = None,
    severity: Optional[Severity] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    monitor: ProctoringMonitor = Depends(get_monitor),
):
    return await _violation_page(monitor, None, student_id, kind, severity, limit, offset)
