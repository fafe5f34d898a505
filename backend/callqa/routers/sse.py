"""
Server-Sent Events endpoint for bulk run progress.

Polls the run record in Redis and the Celery task state every 500ms and only
emits when something changed:
- progress: per-file phase and overall percentage
- completed / failed: terminal task state
- cancelled: the client asked to stop following the run
"""
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from callqa.dependencies import get_current_user
from callqa.services.redis_client import redis_client
from callqa.services.task_queue import celery_app

logger = logging.getLogger(__name__)

router = APIRouter()

POLL_INTERVAL = 0.5  # 500ms internal Redis polling
HEARTBEAT_INTERVAL = 15  # Seconds between heartbeats
MAX_DURATION = 3600  # Batches can be long, one hour max per connection


def _format_sse(event: str, data: dict) -> str:
    """Format a Server-Sent Event message."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _run_event_generator(run_id: str):
    """
    Async generator that yields SSE events for a bulk run.

    Emits heartbeat every 15s to keep the connection alive through proxies.
    """
    elapsed = 0.0
    heartbeat_timer = 0.0
    last_status = None
    last_snapshot = None

    yield _format_sse("connected", {"run_id": run_id})

    while elapsed < MAX_DURATION:
        try:
            run = await redis_client.get_run(run_id)
            if not run:
                yield _format_sse("error", {"message": "Run not found"})
                return

            if run.get("cancelled"):
                yield _format_sse("cancelled", {
                    "run_id": run_id,
                    "message": "Stopped following the run; remaining files are still processed",
                })
                return

            task_id = run.get("task_id")
            if task_id:
                task_result = celery_app.AsyncResult(task_id)
                current_status = task_result.status

                if current_status == "PROGRESS" and task_result.info:
                    snapshot = json.dumps(task_result.info, sort_keys=True)
                    if snapshot != last_snapshot:
                        last_snapshot = snapshot
                        yield _format_sse("progress", {"run_id": run_id, **task_result.info})

                if current_status != last_status:
                    last_status = current_status

                    if current_status == "SUCCESS":
                        outcome = task_result.result or {}
                        yield _format_sse("completed", {"run_id": run_id, "result": outcome})
                        await redis_client.update_run(run_id, {
                            "status": "completed",
                            "bulk_session_id": outcome.get("bulk_session_id"),
                        })
                        return

                    elif current_status == "FAILURE":
                        error = str(task_result.result)
                        yield _format_sse("failed", {"run_id": run_id, "error": error})
                        await redis_client.update_run(run_id, {"status": "failed", "error": error})
                        return

            heartbeat_timer += POLL_INTERVAL
            if heartbeat_timer >= HEARTBEAT_INTERVAL:
                heartbeat_timer = 0
                yield _format_sse("heartbeat", {"elapsed": round(elapsed)})

        except asyncio.CancelledError:
            logger.debug("SSE connection cancelled for run %s", run_id)
            return
        except Exception as e:
            logger.warning("SSE error for run %s: %s", run_id, e)
            yield _format_sse("error", {"message": str(e)})

        await asyncio.sleep(POLL_INTERVAL)
        elapsed += POLL_INTERVAL

    yield _format_sse("timeout", {"message": "SSE connection timed out after 1 hour"})


@router.get("/runs/{run_id}/stream")
async def stream_run_events(run_id: str, user_id: int = Depends(get_current_user)):
    """
    SSE endpoint for real-time bulk run updates.

    Events:
    - connected: Initial connection confirmation
    - progress: Tracker snapshot (files, completed, failed, progress)
    - completed: Run outcome with bulk_session_id
    - failed: Worker failure
    - cancelled: Run cancelled by the client
    - heartbeat: Keep-alive (every 15s)
    - timeout: Max duration reached
    """
    run = await redis_client.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    if run.get("user_id") != user_id:
        raise HTTPException(status_code=403, detail="Access denied")

    return StreamingResponse(
        _run_event_generator(run_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
