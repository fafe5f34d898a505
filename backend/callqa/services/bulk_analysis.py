"""
Bulk analysis runner.

Files are analyzed strictly one after another, with a fixed pause between
them so the AI API is not hammered. For each file the runner:

1. emits progress events onto a ProgressChannel (pending -> transcribing ->
   analyzing -> completed | error),
2. stores the file result, retrying failed writes with exponential backoff,
3. keeps going when a file fails: the failure becomes an `error` event and a
   zero-score stub in the results.

When every file has been handled the batch summary is computed and written
once on the bulk session row. Database failures, for file rows or the
summary, are logged and never abort the run.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from callqa.schemas import CallAnalysis, FileAnalysis, validate_language
from callqa.services.bulk_summary import BulkSummary, compute_bulk_summary

logger = logging.getLogger(__name__)


class ProgressPhase(str, Enum):
    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"


# Checkpoints of a file's lifecycle: (phase, percentage)
STARTED = (ProgressPhase.TRANSCRIBING, 10)
TRANSCRIBED = (ProgressPhase.TRANSCRIBING, 70)
ANALYZING = (ProgressPhase.ANALYZING, 80)
ANALYZED = (ProgressPhase.ANALYZING, 90)
DONE = (ProgressPhase.COMPLETED, 100)


@dataclass(frozen=True)
class ProgressEvent:
    """One phase transition of one file."""
    file_index: int
    file_name: str
    phase: ProgressPhase
    progress: int
    error: str | None = None
    bulk_session_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_index": self.file_index,
            "file_name": self.file_name,
            "status": self.phase.value,
            "progress": self.progress,
            "error": self.error,
        }


_CLOSED = object()


class ProgressChannel:
    """
    Single-consumer stream of ProgressEvents.

    The runner publishes and closes; the consumer iterates with `async for`
    until the channel is closed.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    async def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            raise RuntimeError("Progress channel is closed")
        await self._queue.put(event)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class ProgressTracker:
    """Folds progress events into the JSON snapshot exposed to clients."""

    def __init__(self):
        self.bulk_session_id: int | None = None
        self.files: dict[int, dict[str, Any]] = {}

    def apply(self, event: ProgressEvent) -> dict[str, Any]:
        if event.bulk_session_id is not None:
            self.bulk_session_id = event.bulk_session_id
        self.files[event.file_index] = event.to_dict()
        return self.snapshot()

    def snapshot(self) -> dict[str, Any]:
        files = [self.files[i] for i in sorted(self.files)]
        terminal = (ProgressPhase.COMPLETED.value, ProgressPhase.ERROR.value)
        overall = (
            sum(100 if f["status"] in terminal else f["progress"] for f in files) / len(files)
            if files else 0
        )
        return {
            "bulk_session_id": self.bulk_session_id,
            "total": len(files),
            "completed": sum(1 for f in files if f["status"] == ProgressPhase.COMPLETED.value),
            "failed": sum(1 for f in files if f["status"] == ProgressPhase.ERROR.value),
            "progress": round(overall, 1),
            "files": files,
        }


@dataclass
class AudioInput:
    """A recording to analyze, either on disk or already in memory."""
    name: str
    mime_type: str = "audio/mpeg"
    path: Path | None = None
    data: bytes | None = None

    @property
    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.path is not None and self.path.exists():
            return self.path.stat().st_size
        return 0

    async def read(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise ValueError(f"No audio content for {self.name}")
        return await asyncio.to_thread(self.path.read_bytes)


class Pipeline(Protocol):
    async def transcribe(self, audio: bytes, mime_type: str, language: str) -> str: ...

    async def analyze_transcript(self, transcription: str, language: str) -> CallAnalysis: ...


class BulkStore(Protocol):
    async def create_session(
        self, user_id: int, session_name: str, source_language: str, total_files: int
    ) -> Any: ...

    async def save_file_analysis(self, bulk_session_id: int, result: FileAnalysis) -> Any: ...

    async def save_summary(self, bulk_session_id: int, summary: BulkSummary) -> Any: ...


@dataclass
class BulkRunOutcome:
    bulk_session_id: int
    results: list[FileAnalysis]
    persisted_count: int
    summary: BulkSummary
    unsaved_files: list[str] = field(default_factory=list)
    summary_saved: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "bulk_session_id": self.bulk_session_id,
            "persisted_count": self.persisted_count,
            "unsaved_files": self.unsaved_files,
            "completed_files": self.summary.completed_files,
            "failed_files": self.summary.failed_files,
            "summary_saved": self.summary_saved,
            "summary": self.summary.to_columns(),
            "files": [
                {
                    "file_name": r.file_name,
                    "status": r.status,
                    "overall_score": r.overall_score,
                    "summary": r.summary,
                    "error": r.error,
                }
                for r in self.results
            ],
        }


def default_bulk_session_name(today: date | None = None) -> str:
    return f"Bulk Analysis - {(today or date.today()).isoformat()}"


class BulkAnalysisRunner:
    """Sequential batch orchestrator."""

    def __init__(
        self,
        pipeline: Pipeline,
        store: BulkStore,
        file_delay: float = 1.0,
        save_attempts: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pipeline = pipeline
        self.store = store
        self.file_delay = file_delay
        self.save_attempts = max(1, save_attempts)
        self._sleep = sleep

    async def run(
        self,
        files: list[AudioInput],
        source_language: str,
        user_id: int,
        session_name: str | None = None,
        events: ProgressChannel | None = None,
    ) -> BulkRunOutcome:
        """
        Analyze every file and persist results plus the batch summary.

        Returns results in input order, including failed stubs. The events
        channel, when given, is always closed on return.
        """
        try:
            if not files:
                raise ValueError("At least one file is required")
            language = validate_language(source_language)
            started = time.monotonic()

            session = await self.store.create_session(
                user_id=user_id,
                session_name=session_name or default_bulk_session_name(),
                source_language=language,
                total_files=len(files),
            )
            session_id = session.id
            logger.info("Bulk session %s: %d files (%s)", session_id, len(files), language)

            for index, audio in enumerate(files):
                await self._emit(events, ProgressEvent(index, audio.name, ProgressPhase.PENDING, 0, None, session_id))

            results: list[FileAnalysis] = []
            unsaved: list[str] = []
            for index, audio in enumerate(files):
                if index > 0 and self.file_delay > 0:
                    await self._sleep(self.file_delay)

                result = await self._process_file(index, audio, language, session_id, events)
                results.append(result)
                if not await self._save_with_retry(session_id, result):
                    unsaved.append(result.file_name)

            summary = compute_bulk_summary(results, time.monotonic() - started)
            summary_saved = True
            try:
                await self.store.save_summary(session_id, summary)
            except Exception as e:
                summary_saved = False
                logger.error("Bulk session %s: saving the summary failed: %s", session_id, e, exc_info=True)
            logger.info(
                "Bulk session %s done: %d completed, %d failed, %d unsaved",
                session_id, summary.completed_files, summary.failed_files, len(unsaved),
            )
            return BulkRunOutcome(
                bulk_session_id=session_id,
                results=results,
                persisted_count=len(results) - len(unsaved),
                summary=summary,
                unsaved_files=unsaved,
                summary_saved=summary_saved,
            )
        finally:
            if events is not None:
                await events.close()

    async def _emit(self, events: ProgressChannel | None, event: ProgressEvent) -> None:
        if events is not None:
            await events.publish(event)

    async def _process_file(
        self,
        index: int,
        audio: AudioInput,
        language: str,
        session_id: int,
        events: ProgressChannel | None,
    ) -> FileAnalysis:
        """Run one file through the pipeline. Never raises on pipeline errors."""
        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        progress = 0

        async def step(checkpoint: tuple[ProgressPhase, int]) -> None:
            nonlocal progress
            phase, progress = checkpoint
            await self._emit(events, ProgressEvent(index, audio.name, phase, progress, None, session_id))

        try:
            await step(STARTED)
            data = await audio.read()
            transcription = await self.pipeline.transcribe(data, audio.mime_type, language)
            await step(TRANSCRIBED)

            await step(ANALYZING)
            call = await self.pipeline.analyze_transcript(transcription, language)
            await step(ANALYZED)

            result = FileAnalysis(
                file_name=audio.name,
                file_size=audio.size,
                processing_order=index + 1,
                status="completed",
                call=call,
                scores=call.scores,
                processing_time=round(time.monotonic() - t0, 2),
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
            )
            await step(DONE)
            return result
        except Exception as e:
            logger.error("Bulk session %s: file %d (%s) failed: %s", session_id, index + 1, audio.name, e)
            await self._emit(events, ProgressEvent(index, audio.name, ProgressPhase.ERROR, progress, str(e), session_id))
            return FileAnalysis(
                file_name=audio.name,
                file_size=audio.size,
                processing_order=index + 1,
                status="failed",
                processing_time=round(time.monotonic() - t0, 2),
                error=str(e),
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
            )

    async def _save_with_retry(self, session_id: int, result: FileAnalysis) -> bool:
        """Persist one file result. Returns False once every attempt failed."""
        for attempt in range(1, self.save_attempts + 1):
            try:
                await self.store.save_file_analysis(session_id, result)
                return True
            except Exception as e:
                if attempt < self.save_attempts:
                    wait = 2 ** attempt
                    logger.warning(
                        "Saving %s attempt %d/%d failed: %s, retrying in %ds",
                        result.file_name, attempt, self.save_attempts, e, wait,
                    )
                    await self._sleep(wait)
                else:
                    logger.error(
                        "Saving %s failed after %d attempts, result not persisted",
                        result.file_name, self.save_attempts, exc_info=True,
                    )
        return False
