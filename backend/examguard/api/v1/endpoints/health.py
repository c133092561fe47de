from fastapi import APIRouter, Depends
import psutil
import time
import logging

from ....core.cache import CacheManager
from ....monitoring.monitor import ProctoringMonitor
from ...deps import get_cache, get_monitor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def get_health(
    monitor: ProctoringMonitor = Depends(get_monitor),
    cache: CacheManager = Depends(get_cache),
):
    """Database, cache and host status plus the live monitoring load"""
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "service": "examguard-api",
        "services": {},
    }

    try:
        start_time = time.time()
        await monitor.store.ping()
        health_status["services"]["database"] = {
            "status": "healthy",
            "response_time": round((time.time() - start_time) * 1000, 2),
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["services"]["database"] = {"status": "error", "error": str(e)}
        health_status["status"] = "unhealthy"

    if not cache.enabled:
        health_status["services"]["cache"] = {"status": "disabled"}
    elif await cache.ahealth_check():
        health_status["services"]["cache"] = {"status": "healthy"}
    else:
        health_status["services"]["cache"] = {"status": "unhealthy"}
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"

    try:
        health_status["system"] = {
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage('/').percent,
        }
    except Exception as e:
        health_status["system"] = {"error": str(e)}

    health_status["monitoring"] = {
        "active_sessions": monitor.active_workers,
        "supervised_sessions": monitor.supervisor.watched_count,
        "events_accepted": monitor.ingestion.accepted,
        "events_merged": monitor.ingestion.merged,
    }
    return health_status
