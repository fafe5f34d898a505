"""
Celery client used by the API to enqueue worker tasks and read their state.

The API never imports worker code; tasks are addressed by name.
"""
from pathlib import Path

from celery import Celery

from callqa.config import settings

RUN_BULK_ANALYSIS = "callqa_worker.bulk_analysis.run_bulk_analysis"
BULK_QUEUE = "bulk"

celery_app = Celery(
    "callqa",
    broker=settings.redis_url,
    backend=settings.redis_url,
    set_as_current=False,  # the worker process imports this too; its own app stays current
)
celery_app.conf.result_backend_transport_options = {"max_connections": 10}


def staged_run_dir(run_id: str) -> Path:
    """Directory holding the uploaded recordings of a bulk run until the worker is done."""
    return Path(settings.upload_dir) / "bulk" / run_id
