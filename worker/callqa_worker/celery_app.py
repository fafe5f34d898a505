"""
Celery application configuration.

The worker shares the `callqa` package with the API for settings, the AI
client and the repositories.
"""
import logging

from celery import Celery
from celery.signals import worker_shutdown

from callqa.config import settings

# Structured logging config
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


@worker_shutdown.connect
def _log_shutdown(**kwargs):
    logger.info("Worker shutting down")


celery_app = Celery(
    "callqa",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "callqa_worker.bulk_analysis",
        "callqa_worker.cleanup",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=6 * 3600,  # a batch of long recordings can take hours
    worker_prefetch_multiplier=1,  # one batch at a time per process
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=settings.bulk_run_ttl,
)

celery_app.conf.task_routes = {
    "callqa_worker.bulk_analysis.*": {"queue": "bulk"},
    "callqa_worker.cleanup.*": {"queue": "default"},
}

# Periodic tasks (Celery beat)
celery_app.conf.beat_schedule = {
    "cleanup-staged-uploads": {
        "task": "callqa_worker.cleanup.cleanup_staged_uploads",
        "schedule": 3600.0,  # Every hour
    },
}
