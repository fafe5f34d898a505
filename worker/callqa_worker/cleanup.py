"""
Periodic cleanup of staged bulk uploads.

Scheduled via Celery beat (every hour). Run directories are normally removed
by the task that consumed them; this catches runs whose task never ran or
whose worker died mid-batch.
"""
import logging
import shutil
import time
from pathlib import Path

from celery import shared_task

from callqa.config import settings

logger = logging.getLogger(__name__)


def remove_stale_runs(root: Path, max_age: float, now: float | None = None) -> int:
    """Delete run directories under `root` not modified for `max_age` seconds."""
    if not root.exists():
        return 0
    cutoff = (now or time.time()) - max_age
    removed = 0
    for entry in root.iterdir():
        if entry.is_dir() and entry.stat().st_mtime < cutoff:
            shutil.rmtree(entry, ignore_errors=True)
            removed += 1
            logger.debug("Removed staged run dir: %s", entry.name)
    return removed


@shared_task(name="callqa_worker.cleanup.cleanup_staged_uploads")
def cleanup_staged_uploads():
    removed = remove_stale_runs(Path(settings.upload_dir) / "bulk", settings.upload_max_age)
    logger.info("Cleanup complete: %d staged run dirs removed", removed)
    return {"deleted_run_dirs": removed}
