"""
Single-file analysis routes: sessions, stored results and direct AI operations.
"""
import logging
from datetime import date

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import Field, field_validator

from callqa.config import settings
from callqa.dependencies import ensure_owner, get_current_user
from callqa.errors import DuplicateResultError, InvalidLanguageError
from callqa.schemas import CallAnalysis, CamelModel, ComprehensiveAnalysis, validate_language
from callqa.services.analysis_pipeline import analysis_pipeline
from callqa.services.analysis_repository import analysis_repository
from callqa.services.gemini import gemini_client

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateSessionRequest(CamelModel):
    """Request to create an analysis session."""
    session_name: str | None = Field(default=None, max_length=255)
    source_language: str = Field(default="en", max_length=10)
    audio_file_name: str | None = Field(default=None, max_length=255)
    audio_file_size: int | None = Field(default=None, ge=0)

    @field_validator("source_language")
    @classmethod
    def _language(cls, value: str) -> str:
        return validate_language(value)


class RenameSessionRequest(CamelModel):
    session_name: str = Field(min_length=1, max_length=255)


class StoreResultRequest(CamelModel):
    """A finished analysis computed client-side or by an earlier call."""
    transcription: str = Field(min_length=1)
    translation: str = ""
    analysis: ComprehensiveAnalysis
    keywords: list[str] = Field(default_factory=list)


class TranslateRequest(CamelModel):
    text: str = Field(min_length=1)
    source_language: str = Field(max_length=10)

    @field_validator("source_language")
    @classmethod
    def _language(cls, value: str) -> str:
        return validate_language(value)


class TextRequest(CamelModel):
    text: str = Field(min_length=1)


def default_session_name(today: date | None = None) -> str:
    return f"Analysis {(today or date.today()).isoformat()}"


def _internal_error(action: str, error: Exception) -> HTTPException:
    logger.error("%s: %s", action, error)
    detail = action if settings.is_production else f"{action}: {error}"
    return HTTPException(status_code=500, detail=detail)


def _language_or_400(code: str) -> str:
    try:
        return validate_language(code)
    except InvalidLanguageError as e:
        raise HTTPException(status_code=400, detail=str(e))


async def _read_audio(audio: UploadFile) -> bytes:
    """Uploaded audio content; 400 for non-audio types, 413 above the size limit."""
    content_type = audio.content_type or ""
    if not content_type.startswith("audio/"):
        raise HTTPException(status_code=400, detail=f"Only audio files are allowed, got '{content_type}'")
    content = await audio.read()
    if len(content) > settings.max_upload_size:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Max {settings.max_upload_size // (1024 * 1024)}MB",
        )
    if not content:
        raise HTTPException(status_code=400, detail="Empty audio file")
    return content


# ============================================
# Sessions
# ============================================

@router.post("/sessions", status_code=201)
async def create_session(request: CreateSessionRequest, user_id: int = Depends(get_current_user)):
    session = await analysis_repository.create_session(
        user_id=user_id,
        session_name=request.session_name or default_session_name(),
        source_language=request.source_language,
        audio_file_name=request.audio_file_name,
        audio_file_size=request.audio_file_size,
    )
    return {"message": "Analysis session created", "session": session.to_dict(include_result=True)}


@router.get("/sessions/check")
async def check_existing_analysis(
    file_name: str | None = Query(default=None, alias="fileName"),
    file_size: int | None = Query(default=None, alias="fileSize"),
    user_id: int = Depends(get_current_user),
):
    """
    Look for an earlier analysis of the same recording (name + size).

    `exists` is true only when that session already holds a result, so the
    client can show it instead of paying for a new analysis.
    """
    if not file_name or file_size is None:
        raise HTTPException(status_code=400, detail="fileName and fileSize are required")

    session = await analysis_repository.find_by_file_details(user_id, file_name, file_size)
    if session is None or session.result is None:
        return {"exists": False, "session": None}
    return {"exists": True, "session": session.to_dict(include_result=True)}


@router.get("/sessions")
async def list_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: int = Depends(get_current_user),
):
    sessions = await analysis_repository.list_sessions(user_id, limit=limit, offset=offset)
    return {
        "sessions": [s.to_dict(include_result=True) for s in sessions],
        "limit": limit,
        "offset": offset,
    }


@router.get("/sessions/{session_id}")
async def get_session(session_id: int, user_id: int = Depends(get_current_user)):
    session = ensure_owner(await analysis_repository.get_session(session_id), user_id)
    return {"session": session.to_dict(include_result=True)}


@router.put("/sessions/{session_id}")
async def rename_session(
    session_id: int,
    request: RenameSessionRequest,
    user_id: int = Depends(get_current_user),
):
    ensure_owner(await analysis_repository.get_session(session_id), user_id)
    session = await analysis_repository.rename_session(session_id, request.session_name)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session updated", "session": session.to_dict(include_result=True)}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: int, user_id: int = Depends(get_current_user)):
    ensure_owner(await analysis_repository.get_session(session_id), user_id)
    await analysis_repository.delete_session(session_id)
    return {"message": "Session deleted"}


@router.post("/sessions/{session_id}/results", status_code=201)
async def store_result(
    session_id: int,
    request: StoreResultRequest,
    user_id: int = Depends(get_current_user),
):
    ensure_owner(await analysis_repository.get_session(session_id), user_id)
    call = CallAnalysis(
        transcription=request.transcription,
        translation=request.translation or request.transcription,
        analysis=request.analysis,
        keywords=request.keywords,
    )
    try:
        result = await analysis_repository.create_result(session_id, call)
    except DuplicateResultError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"message": "Analysis result stored", "result": result.to_dict(), "scores": call.scores.model_dump()}


# ============================================
# Results & stats
# ============================================

@router.get("/results/recent")
async def recent_results(
    limit: int = Query(default=10, ge=1, le=100),
    user_id: int = Depends(get_current_user),
):
    return {"results": await analysis_repository.recent_results(user_id, limit=limit)}


@router.get("/results/search")
async def search_results(
    q: str | None = Query(default=None),
    user_id: int = Depends(get_current_user),
):
    if not q or not q.strip():
        raise HTTPException(status_code=400, detail="Search query 'q' is required")
    results = await analysis_repository.search_results(user_id, q.strip())
    return {"query": q.strip(), "results": results}


@router.get("/stats")
async def user_stats(user_id: int = Depends(get_current_user)):
    return {"stats": await analysis_repository.user_stats(user_id)}


# ============================================
# AI operations
# ============================================

@router.post("/transcribe")
async def transcribe(
    audio: UploadFile = File(...),
    source_language: str = Form(default="en", alias="sourceLanguage"),
    user_id: int = Depends(get_current_user),
):
    language = _language_or_400(source_language)
    content = await _read_audio(audio)
    try:
        transcription = await gemini_client.transcribe_audio(content, audio.content_type, language)
    except Exception as e:
        raise _internal_error("Failed to transcribe audio", e)
    return {"transcription": transcription, "source_language": language}


@router.post("/translate")
async def translate(request: TranslateRequest, user_id: int = Depends(get_current_user)):
    try:
        translation = await gemini_client.translate_text(request.text, request.source_language)
    except Exception as e:
        raise _internal_error("Failed to translate text", e)
    return {"translation": translation}


@router.post("/analyze")
async def analyze(request: TextRequest, user_id: int = Depends(get_current_user)):
    try:
        analysis = await gemini_client.analyze_call(request.text)
    except Exception as e:
        raise _internal_error("Failed to analyze text", e)
    return {"analysis": analysis.model_dump(mode="json")}


@router.post("/keywords")
async def keywords(request: TextRequest, user_id: int = Depends(get_current_user)):
    try:
        extracted = await gemini_client.extract_keywords(request.text)
    except Exception as e:
        raise _internal_error("Failed to extract keywords", e)
    return {"keywords": extracted}


@router.post("/complete", status_code=201)
async def complete_analysis(
    audio: UploadFile = File(...),
    source_language: str = Form(default="en", alias="sourceLanguage"),
    session_id: int | None = Form(default=None, alias="sessionId"),
    session_name: str | None = Form(default=None, alias="sessionName"),
    user_id: int = Depends(get_current_user),
):
    """
    Transcribe, translate, analyze and store in one call.

    With `sessionId` the result is attached to that session (409 if it already
    has one, checked before any AI work). Otherwise a new session is created
    for the uploaded file, only once the analysis succeeded.
    """
    language = _language_or_400(source_language)
    content = await _read_audio(audio)

    session = None
    if session_id is not None:
        session = ensure_owner(await analysis_repository.get_session(session_id), user_id)
        if session.result is not None:
            raise HTTPException(status_code=409, detail=f"Analysis result already exists for session {session_id}")

    try:
        call = await analysis_pipeline.complete(content, audio.content_type, language)
    except Exception as e:
        raise _internal_error("Failed to analyze audio", e)

    if session is None:
        session = await analysis_repository.create_session(
            user_id=user_id,
            session_name=(session_name or default_session_name())[:255],
            source_language=language,
            audio_file_name=audio.filename,
            audio_file_size=len(content),
        )

    try:
        result = await analysis_repository.create_result(session.id, call)
    except DuplicateResultError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info("Session %s analyzed (%s, %d bytes)", session.id, language, len(content))
    return {
        "session": session.to_dict(),
        "result": result.to_dict(),
        "scores": call.scores.model_dump(),
    }
