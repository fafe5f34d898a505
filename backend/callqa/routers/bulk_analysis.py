"""
Bulk analysis routes: batch sessions, per-file results, summaries, exports and
server-side runs executed by the Celery worker.
"""
import io
import logging
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import Literal

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import Field, field_validator

from callqa.config import settings
from callqa.dependencies import ensure_owner, get_current_user
from callqa.errors import InvalidLanguageError
from callqa.schemas import CamelModel, Sentiment, validate_language
from callqa.services import report_generator
from callqa.services.bulk_repository import bulk_repository
from callqa.services.redis_client import redis_client
from callqa.services.task_queue import BULK_QUEUE, RUN_BULK_ANALYSIS, celery_app, staged_run_dir

logger = logging.getLogger(__name__)

router = APIRouter()

FileStatus = Literal["pending", "processing", "completed", "failed"]
SessionStatus = Literal["processing", "completed", "failed", "cancelled"]

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class CreateBulkSessionRequest(CamelModel):
    """Request to open a batch session; the file count is known upfront."""
    session_name: str = Field(min_length=1, max_length=255)
    source_language: str = Field(max_length=10)
    total_files: int = Field(ge=1)

    @field_validator("source_language")
    @classmethod
    def _language(cls, value: str) -> str:
        return validate_language(value)


class StoreFileResultRequest(CamelModel):
    """One analyzed file of a batch."""
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int | None = Field(default=None, ge=0)
    processing_order: int = Field(ge=1)
    status: FileStatus = "completed"
    transcription: str | None = None
    translation: str | None = None
    call_summary: str | None = None
    agent_coaching: str | None = None
    overall_score: float | None = Field(default=None, ge=0, le=10)
    call_opening_score: float | None = Field(default=None, ge=0, le=10)
    call_closing_score: float | None = Field(default=None, ge=0, le=10)
    speaking_quality_score: float | None = Field(default=None, ge=0, le=10)
    customer_sentiment: Sentiment | None = None
    customer_sentiment_score: float | None = Field(default=None, ge=-1, le=1)
    customer_sentiment_justification: str | None = None
    agent_sentiment: Sentiment | None = None
    agent_sentiment_score: float | None = Field(default=None, ge=-1, le=1)
    agent_sentiment_justification: str | None = None
    call_opening_analysis: dict | None = None
    call_closing_analysis: dict | None = None
    speaking_quality_analysis: dict | None = None
    keywords: list[str] = Field(default_factory=list)
    processing_time: float | None = Field(default=None, ge=0)
    error_message: str | None = None


class UpdateFileStatusRequest(CamelModel):
    status: FileStatus
    error_message: str | None = None


class SessionSummaryRequest(CamelModel):
    """Aggregate statistics computed at the end of a batch."""
    avg_overall_score: float | None = Field(default=None, ge=0, le=10)
    avg_call_opening_score: float | None = Field(default=None, ge=0, le=10)
    avg_call_closing_score: float | None = Field(default=None, ge=0, le=10)
    avg_speaking_quality_score: float | None = Field(default=None, ge=0, le=10)
    positive_sentiment_count: int | None = Field(default=None, ge=0)
    neutral_sentiment_count: int | None = Field(default=None, ge=0)
    negative_sentiment_count: int | None = Field(default=None, ge=0)
    positive_sentiment_percentage: float | None = Field(default=None, ge=0, le=100)
    batch_summary: str | None = None
    key_insights: dict | None = None
    top_keywords: list[str] | None = None
    recommendations: str | None = None
    total_processing_time: float | None = Field(default=None, ge=0)
    status: SessionStatus | None = None


def _internal_error(action: str, error: Exception) -> HTTPException:
    logger.error("%s: %s", action, error, exc_info=True)
    detail = action if settings.is_production else f"{action}: {error}"
    return HTTPException(status_code=500, detail=detail)


async def _owned_session(session_id: int, user_id: int, with_files: bool = False):
    return ensure_owner(await bulk_repository.get_session(session_id, with_files=with_files), user_id)


def _session_payload(session, with_files: bool = False) -> dict:
    data = session.to_dict()
    if with_files:
        data["file_results"] = [f.to_dict() for f in session.file_results]
    return data


# ============================================
# Sessions
# ============================================

@router.post("/sessions", status_code=201)
async def create_bulk_session(request: CreateBulkSessionRequest, user_id: int = Depends(get_current_user)):
    session = await bulk_repository.create_session(
        user_id=user_id,
        session_name=request.session_name,
        source_language=request.source_language,
        total_files=request.total_files,
    )
    return {"message": "Bulk analysis session created", "session": session.to_dict()}


@router.get("/sessions")
async def list_bulk_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: int = Depends(get_current_user),
):
    sessions = await bulk_repository.list_sessions(user_id, limit=limit, offset=offset)
    return {"sessions": [s.to_dict() for s in sessions], "limit": limit, "offset": offset}


@router.get("/sessions/{session_id}")
async def get_bulk_session(session_id: int, user_id: int = Depends(get_current_user)):
    session = await _owned_session(session_id, user_id, with_files=True)
    return {"session": _session_payload(session, with_files=True)}


@router.get("/sessions/{session_id}/files")
async def get_file_results(session_id: int, user_id: int = Depends(get_current_user)):
    await _owned_session(session_id, user_id)
    files = await bulk_repository.get_file_results(session_id)
    return {"files": [f.to_dict() for f in files]}


@router.delete("/sessions/{session_id}")
async def delete_bulk_session(session_id: int, user_id: int = Depends(get_current_user)):
    await _owned_session(session_id, user_id)
    await bulk_repository.delete_session(session_id)
    return {"message": "Bulk analysis session deleted"}


@router.post("/sessions/{session_id}/files", status_code=201)
async def store_file_result(
    session_id: int,
    request: StoreFileResultRequest,
    user_id: int = Depends(get_current_user),
):
    await _owned_session(session_id, user_id)
    row = await bulk_repository.create_file_result(session_id, request.model_dump(mode="json"))
    session = await bulk_repository.update_progress(session_id)
    return {
        "message": "File result stored",
        "file_result": row.to_dict(),
        "session": session.to_dict() if session else None,
    }


@router.put("/sessions/{session_id}/files/{file_id}")
async def update_file_status(
    session_id: int,
    file_id: int,
    request: UpdateFileStatusRequest,
    user_id: int = Depends(get_current_user),
):
    await _owned_session(session_id, user_id)
    row = await bulk_repository.update_file_result_status(
        session_id, file_id, request.status, request.error_message,
    )
    if row is None:
        raise HTTPException(status_code=404, detail="File result not found")
    return {"message": "File status updated", "file_result": row.to_dict()}


@router.put("/sessions/{session_id}/summary")
async def update_session_summary(
    session_id: int,
    request: SessionSummaryRequest,
    user_id: int = Depends(get_current_user),
):
    await _owned_session(session_id, user_id)
    session = await bulk_repository.update_summary(session_id, request.model_dump(mode="json", exclude_none=True))
    return {"message": "Session summary updated", "session": session.to_dict() if session else None}


@router.get("/stats")
async def bulk_stats(
    days: int = Query(default=30, ge=1, le=365),
    user_id: int = Depends(get_current_user),
):
    return {"stats": await bulk_repository.user_stats(user_id, days=days)}


# ============================================
# Exports
# ============================================

async def _export_data(session_id: int, user_id: int) -> tuple[dict, list[dict]]:
    session = await _owned_session(session_id, user_id, with_files=True)
    return session.to_dict(), [f.to_dict() for f in session.file_results]


def _download(content: bytes | str, filename: str, media_type: str) -> StreamingResponse:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return StreamingResponse(
        io.BytesIO(content),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/sessions/{session_id}/export/excel")
async def export_excel(session_id: int, user_id: int = Depends(get_current_user)):
    session, files = await _export_data(session_id, user_id)
    try:
        content = report_generator.generate_excel_report(session, files)
    except Exception as e:
        raise _internal_error("Failed to generate Excel report", e)
    return _download(content, report_generator.export_filename("bulk_analysis", session_id, "xlsx"), XLSX_MEDIA_TYPE)


@router.get("/sessions/{session_id}/export/pdf")
async def export_pdf(session_id: int, user_id: int = Depends(get_current_user)):
    session, files = await _export_data(session_id, user_id)
    try:
        content = report_generator.generate_pdf_report(session, files)
    except Exception as e:
        raise _internal_error("Failed to generate PDF report", e)
    return _download(content, report_generator.export_filename("bulk_analysis", session_id, "pdf"), "application/pdf")


@router.get("/sessions/{session_id}/export/zip")
async def export_zip(
    session_id: int,
    formats: str = Query(default="excel,pdf"),
    user_id: int = Depends(get_current_user),
):
    requested = [f.strip().lower() for f in formats.split(",") if f.strip()]
    unknown = [f for f in requested if f not in report_generator.EXPORT_FORMATS]
    if unknown or not requested:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid formats {unknown or formats!r}; allowed: {', '.join(report_generator.EXPORT_FORMATS)}",
        )
    session, files = await _export_data(session_id, user_id)
    try:
        content = report_generator.generate_zip_archive(session, files, requested)
    except Exception as e:
        raise _internal_error("Failed to generate ZIP archive", e)
    return _download(content, report_generator.export_filename("bulk_analysis", session_id, "zip"), "application/zip")


@router.get("/sessions/{session_id}/export/summary")
async def export_summary(session_id: int, user_id: int = Depends(get_current_user)):
    session, files = await _export_data(session_id, user_id)
    content = report_generator.generate_text_summary(session, files)
    return _download(content, report_generator.export_filename("bulk_summary", session_id, "txt"), "text/plain; charset=utf-8")


@router.get("/sessions/{session_id}/export/training-json")
async def export_training_json(session_id: int, user_id: int = Depends(get_current_user)):
    session, files = await _export_data(session_id, user_id)
    content = report_generator.generate_training_json(session, files)
    return _download(content, report_generator.export_filename("training_data", session_id, "json"), "application/json")


@router.get("/sessions/{session_id}/export/training-csv")
async def export_training_csv(session_id: int, user_id: int = Depends(get_current_user)):
    session, files = await _export_data(session_id, user_id)
    try:
        content = report_generator.generate_training_csv(files)
    except Exception as e:
        raise _internal_error("Failed to generate training CSV", e)
    return _download(content, report_generator.export_filename("training_data", session_id, "csv"), "text/csv; charset=utf-8")


@router.get("/sessions/{session_id}/export/training-package")
async def export_training_package(session_id: int, user_id: int = Depends(get_current_user)):
    session, files = await _export_data(session_id, user_id)
    try:
        content = report_generator.generate_training_package(session, files)
    except Exception as e:
        raise _internal_error("Failed to generate training package", e)
    return _download(content, report_generator.export_filename("training_package", session_id, "zip"), "application/zip")


# ============================================
# Server-side runs
# ============================================

def _safe_filename(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", Path(name).name).strip("._")
    return cleaned or "audio"


def _run_status(run: dict) -> dict:
    """Run record merged with the Celery task state."""
    status = {
        "run_id": run["run_id"],
        "task_id": run.get("task_id"),
        "status": run.get("status", "queued"),
        "total_files": run.get("total_files"),
        "cancelled": bool(run.get("cancelled")),
        "progress": None,
        "result": None,
        "error": None,
    }
    if status["cancelled"] or not run.get("task_id"):
        return status

    task = celery_app.AsyncResult(run["task_id"])
    if task.status == "PROGRESS" and task.info:
        status["status"] = "running"
        status["progress"] = task.info
    elif task.status == "STARTED":
        status["status"] = "running"
    elif task.status == "SUCCESS":
        status["status"] = "completed"
        status["result"] = task.result
    elif task.status == "FAILURE":
        status["status"] = "failed"
        status["error"] = str(task.result)
    return status


async def _owned_run(run_id: str, user_id: int) -> dict:
    run = await redis_client.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    if run.get("user_id") != user_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return run


@router.post("/runs", status_code=202)
async def start_bulk_run(
    files: list[UploadFile] = File(...),
    source_language: str = Form(..., alias="sourceLanguage"),
    session_name: str | None = Form(default=None, alias="sessionName", max_length=255),
    user_id: int = Depends(get_current_user),
):
    """
    Stage the uploaded recordings and hand the batch to the worker.

    Progress is available from GET /runs/{run_id} or the SSE stream.
    """
    try:
        language = validate_language(source_language)
    except InvalidLanguageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not files:
        raise HTTPException(status_code=400, detail="At least one audio file is required")

    for upload in files:
        if not (upload.content_type or "").startswith("audio/"):
            raise HTTPException(status_code=400, detail=f"{upload.filename}: only audio files are allowed")

    run_id = uuid.uuid4().hex
    run_dir = staged_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)

    try:
        staged = []
        for index, upload in enumerate(files):
            content = await upload.read()
            if len(content) > settings.max_upload_size:
                raise HTTPException(status_code=413, detail=f"{upload.filename}: file too large")
            path = run_dir / f"{index:03d}_{_safe_filename(upload.filename or 'audio')}"
            path.write_bytes(content)
            staged.append({"path": str(path), "name": upload.filename or path.name, "mime_type": upload.content_type})

        task = celery_app.send_task(
            RUN_BULK_ANALYSIS,
            kwargs={
                "run_id": run_id,
                "user_id": user_id,
                "files": staged,
                "source_language": language,
                "session_name": session_name,
            },
            queue=BULK_QUEUE,
        )
    except Exception:
        # nothing was queued, the staged files have no consumer
        shutil.rmtree(run_dir, ignore_errors=True)
        raise

    await redis_client.set_run(run_id, {
        "run_id": run_id,
        "user_id": user_id,
        "task_id": task.id,
        "status": "queued",
        "total_files": len(staged),
        "session_name": session_name,
        "source_language": language,
        "created_at": time.time(),
    })
    logger.info("Bulk run %s queued: %d files, task %s", run_id, len(staged), task.id)
    return {"run_id": run_id, "task_id": task.id, "status": "queued", "total_files": len(staged)}


@router.get("/runs/{run_id}")
async def get_bulk_run(run_id: str, user_id: int = Depends(get_current_user)):
    return _run_status(await _owned_run(run_id, user_id))


@router.post("/runs/{run_id}/cancel")
async def cancel_bulk_run(run_id: str, user_id: int = Depends(get_current_user)):
    """
    Stop following a run. The worker is not interrupted: the file in flight
    and the remaining files are still analyzed and stored.
    """
    await _owned_run(run_id, user_id)
    await redis_client.update_run(run_id, {"cancelled": True, "status": "cancelled"})
    return {"run_id": run_id, "status": "cancelled"}
