from fastapi import Depends
from starlette.requests import HTTPConnection

from ..core.cache import CacheManager, cache
from ..core.config import settings
from ..monitoring.monitor import ProctoringMonitor
from ..services.report_service import ReportService


def get_monitor(connection: HTTPConnection) -> ProctoringMonitor:
    return connection.app.state.monitor


def get_cache() -> CacheManager:
    return cache


def get_report_service(
    monitor: ProctoringMonitor = Depends(get_monitor),
    report_cache: CacheManager = Depends(get_cache),
) -> ReportService:
    return ReportService(monitor, report_cache, ttl=settings.cache_default_ttl)
