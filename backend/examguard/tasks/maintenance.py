from examguard.core.celery_app import celery_app, run_async
from examguard.core.cache import cache
from examguard.core.database import AsyncSessionLocal
from examguard.utils.timezone import utc_now
from sqlalchemy import text
import logging
import psutil

logger = logging.getLogger(__name__)

REPORT_CACHE_PATTERN = "report:*"


@celery_app.task(name="purge_report_cache")
def purge_report_cache():
    """Drop cached session reports so they are rebuilt from the event log"""
    try:
        deleted = run_async(cache.adelete_pattern(REPORT_CACHE_PATTERN))
        logger.info(f"Purged {deleted} cached report(s)")
        return {'reports_purged': deleted}
    except Exception as exc:
        logger.error(f"Error in purge_report_cache: {exc}")
        raise exc


async def _check_database() -> bool:
    async with AsyncSessionLocal() as db:
        await db.execute(text("SELECT 1"))
        return True


@celery_app.task(name="health_check")
def health_check():
    """Task to perform system health checks"""
    health_status = {
        'timestamp': utc_now().isoformat(),
        'cache': False,
        'database': False,
        'memory_usage': None,
    }

    try:
        health_status['cache'] = run_async(cache.ahealth_check())
    except Exception as e:
        logger.error(f"Cache health check failed: {e}")

    try:
        health_status['database'] = run_async(_check_database())
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    try:
        memory = psutil.virtual_memory()
        health_status['memory_usage'] = {
            'total_gb': round(memory.total / (1024**3), 2),
            'used_gb': round(memory.used / (1024**3), 2),
            'available_gb': round(memory.available / (1024**3), 2),
            'usage_percent': memory.percent
        }
    except Exception as e:
        logger.error(f"Memory usage check failed: {e}")

    if not health_status['database']:
        logger.warning(f"Health check degraded: {health_status}")
    return health_status
