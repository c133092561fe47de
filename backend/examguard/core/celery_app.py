from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown
from .config import settings
import warnings
import logging
import asyncio

warnings.filterwarnings("ignore", message=".*register_connect_callback.*")
logging.getLogger('celery.backends.redis').setLevel(logging.ERROR)

logger = logging.getLogger(__name__)

_WORKER_LOOP = None


@worker_process_init.connect
def init_async_loop(**kwargs):
    """
    Called once when each worker process starts.
    Creates and stores a persistent event loop for this process.
    """
    global _WORKER_LOOP
    _WORKER_LOOP = asyncio.new_event_loop()
    asyncio.set_event_loop(_WORKER_LOOP)
    logger.info(f"Initialized asyncio event loop for worker process {kwargs.get('sender', 'unknown')}")


@worker_process_shutdown.connect
def shutdown_async_loop(**kwargs):
    global _WORKER_LOOP
    if _WORKER_LOOP:
        _WORKER_LOOP.close()
        asyncio.set_event_loop(None)
        _WORKER_LOOP = None
        logger.info("Closed asyncio event loop for worker process")


def run_async(coro):
    """Run a coroutine from a task, on the worker's persistent loop when there is one"""
    if _WORKER_LOOP is not None:
        return _WORKER_LOOP.run_until_complete(coro)
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


celery_app = Celery(
    "examguard_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        'examguard.tasks.notifications',
        'examguard.tasks.maintenance',
    ]
)

# Notices and alarms are fire-and-forget; nothing waits on their results
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    timezone='UTC',
    enable_utc=True,
    task_ignore_result=True,

    task_always_eager=settings.celery_task_always_eager,
    task_eager_propagates=False,

    task_routes={
        'send_session_notice': {'queue': 'notifications'},
        'raise_scoring_discrepancy_alarm': {'queue': 'notifications'},
        'purge_report_cache': {'queue': 'maintenance'},
        'health_check': {'queue': 'maintenance'},
    },

    # Redeliver notices when a worker dies mid-task
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=4,

    task_soft_time_limit=15,
    task_time_limit=30,

    broker_connection_retry_on_startup=True,
    broker_transport_options={'visibility_timeout': 600},

    beat_schedule={
        'purge-report-cache': {
            'task': 'purge_report_cache',
            'schedule': settings.report_cache_purge_seconds,
        },
        'health-check': {
            'task': 'health_check',
            'schedule': 600.0,
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
