"""
Bulk analysis task.

Runs a BulkAnalysisRunner over the recordings staged by the API and reports
the tracker snapshot as Celery PROGRESS state, which the SSE router relays.
Each task gets its own event loop, AI client and database pool.
"""
import asyncio
import logging
import shutil
from pathlib import Path

from celery import shared_task

from callqa.config import settings
from callqa.services.analysis_pipeline import AnalysisPipeline
from callqa.services.bulk_analysis import (
    AudioInput,
    BulkAnalysisRunner,
    ProgressChannel,
    ProgressTracker,
)
from callqa.services.bulk_repository import bulk_repository
from callqa.services.database import close_db
from callqa.services.gemini import GeminiClient
from callqa.services.task_queue import staged_run_dir

logger = logging.getLogger(__name__)


def _audio_inputs(files: list[dict]) -> list[AudioInput]:
    return [
        AudioInput(
            name=f["name"],
            mime_type=f.get("mime_type") or "audio/mpeg",
            path=Path(f["path"]),
        )
        for f in files
    ]


async def _run(task, run_id: str, user_id: int, files: list[dict], source_language: str, session_name: str | None) -> dict:
    ai = GeminiClient.from_settings()
    runner = BulkAnalysisRunner(
        AnalysisPipeline(ai),
        bulk_repository,
        file_delay=settings.bulk_file_delay,
        save_attempts=settings.bulk_save_attempts,
    )
    channel = ProgressChannel()
    tracker = ProgressTracker()

    async def report_progress():
        async for event in channel:
            task.update_state(state="PROGRESS", meta={"run_id": run_id, **tracker.apply(event)})

    reporter = asyncio.create_task(report_progress())
    try:
        outcome = await runner.run(
            _audio_inputs(files),
            source_language,
            user_id,
            session_name=session_name,
            events=channel,
        )
    finally:
        # the runner closes the channel, so the reporter always drains
        await reporter
        await ai.close()
        await close_db()

    return {"run_id": run_id, **outcome.to_dict()}


@shared_task(bind=True, name="callqa_worker.bulk_analysis.run_bulk_analysis")
def run_bulk_analysis(
    self,
    run_id: str,
    user_id: int,
    files: list[dict],
    source_language: str,
    session_name: str | None = None,
) -> dict:
    """
    Analyze a batch of staged recordings one after another.

    Returns the run outcome: bulk_session_id, per-file status and the summary.
    """
    logger.info("Bulk run %s: %d files for user %s", run_id, len(files), user_id)
    try:
        return asyncio.run(_run(self, run_id, user_id, files, source_language, session_name))
    finally:
        shutil.rmtree(staged_run_dir(run_id), ignore_errors=True)
