"""
Tests for the sequential bulk runner: ordering, failure isolation, save
retries, progress events and the batch summary.
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from callqa.errors import InvalidLanguageError
from callqa.services.bulk_analysis import (
    AudioInput,
    BulkAnalysisRunner,
    ProgressChannel,
    ProgressPhase,
    ProgressTracker,
)
from callqa.services import bulk_repository as bulk_repository_module
from callqa.services.bulk_repository import BulkAnalysisRepository
from callqa.services.bulk_summary import compute_bulk_summary
from callqa.schemas import FileAnalysis

from conftest import make_call


class FakePipeline:
    """Scores each file from a name -> sentiment score map; listed names fail."""

    def __init__(self, scores: dict[str, float] | None = None, failing: set[str] | None = None):
        self.scores = scores or {}
        self.failing = failing or set()
        self.calls: list[str] = []

    async def transcribe(self, audio: bytes, mime_type: str, language: str) -> str:
        name = audio.decode()
        self.calls.append(name)
        if name in self.failing:
            raise RuntimeError(f"transcription failed for {name}")
        return name

    async def analyze_transcript(self, transcription: str, language: str):
        score = self.scores.get(transcription, 0.6)
        customer = "POSITIVE" if score > 0.3 else "NEGATIVE" if score < -0.1 else "NEUTRAL"
        return make_call(score=score, customer=customer)


class FakeStore:
    def __init__(self, save_failures: int = 0, summary_error: Exception | None = None):
        self.save_failures = save_failures
        self.summary_error = summary_error
        self.save_attempts = 0
        self.saved: list[FileAnalysis] = []
        self.summaries = []

    async def create_session(self, user_id, session_name, source_language, total_files):
        self.session_args = (user_id, session_name, source_language, total_files)
        return SimpleNamespace(id=42)

    async def save_file_analysis(self, bulk_session_id, result):
        self.save_attempts += 1
        if self.save_attempts <= self.save_failures:
            raise ConnectionError("database unavailable")
        self.saved.append(result)

    async def save_summary(self, bulk_session_id, summary):
        if self.summary_error is not None:
            raise self.summary_error
        self.summaries.append(summary)


def audio(name: str) -> AudioInput:
    return AudioInput(name=name, mime_type="audio/mpeg", data=name.encode())


async def _collect(channel: ProgressChannel) -> list:
    return [event async for event in channel]


async def _run(runner, files, **kwargs):
    channel = ProgressChannel()
    collector = asyncio.create_task(_collect(channel))
    outcome = await runner.run(files, "en", user_id=1, events=channel, **kwargs)
    return outcome, await collector


async def test_files_processed_in_order_with_delay():
    pipeline = FakePipeline()
    sleep = AsyncMock()
    runner = BulkAnalysisRunner(pipeline, FakeStore(), file_delay=1.0, sleep=sleep)

    outcome, _ = await _run(runner, [audio("a.mp3"), audio("b.mp3"), audio("c.mp3")])

    assert pipeline.calls == ["a.mp3", "b.mp3", "c.mp3"]
    assert [r.file_name for r in outcome.results] == ["a.mp3", "b.mp3", "c.mp3"]
    assert [r.processing_order for r in outcome.results] == [1, 2, 3]
    # one pause between consecutive files, none before the first
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 1.0]


async def test_failed_file_does_not_stop_the_batch():
    store = FakeStore()
    runner = BulkAnalysisRunner(FakePipeline(failing={"b.mp3"}), store, sleep=AsyncMock())

    outcome, events = await _run(runner, [audio("a.mp3"), audio("b.mp3"), audio("c.mp3")])

    assert [r.status for r in outcome.results] == ["completed", "failed", "completed"]
    failed = outcome.results[1]
    assert failed.overall_score == 0.0
    assert failed.summary == "Processing failed"
    assert "transcription failed" in failed.error

    errors = [e for e in events if e.phase == ProgressPhase.ERROR]
    assert len(errors) == 1
    assert errors[0].file_index == 1
    assert errors[0].progress == 10

    # failed files are persisted too, and the summary only averages successes
    assert len(store.saved) == 3
    assert outcome.summary.completed_files == 2
    assert outcome.summary.failed_files == 1


async def test_save_succeeds_on_third_attempt():
    store = FakeStore(save_failures=2)
    sleep = AsyncMock()
    runner = BulkAnalysisRunner(FakePipeline(), store, save_attempts=3, sleep=sleep)

    outcome, _ = await _run(runner, [audio("a.mp3")])

    assert store.save_attempts == 3
    assert outcome.persisted_count == 1
    assert outcome.unsaved_files == []
    assert [c.args[0] for c in sleep.await_args_list] == [2, 4]


async def test_save_exhaustion_keeps_result_but_not_persisted():
    store = FakeStore(save_failures=10)
    runner = BulkAnalysisRunner(FakePipeline(), store, save_attempts=3, sleep=AsyncMock())

    outcome, _ = await _run(runner, [audio("a.mp3"), audio("b.mp3")])

    assert store.save_attempts == 6
    assert outcome.persisted_count == 0
    assert outcome.unsaved_files == ["a.mp3", "b.mp3"]
    assert [r.status for r in outcome.results] == ["completed", "completed"]
    assert len(store.summaries) == 1


async def test_database_down_for_every_write_still_completes():
    store = FakeStore(save_failures=100, summary_error=ConnectionError("database unavailable"))
    runner = BulkAnalysisRunner(FakePipeline(), store, save_attempts=3, sleep=AsyncMock())

    outcome, events = await _run(runner, [audio("a.mp3"), audio("b.mp3")])

    assert [r.status for r in outcome.results] == ["completed", "completed"]
    assert outcome.persisted_count == 0
    assert outcome.summary_saved is False
    assert outcome.summary.completed_files == 2
    assert outcome.to_dict()["summary_saved"] is False
    assert events[-1].phase == ProgressPhase.COMPLETED


async def test_progress_is_monotonic_per_file():
    runner = BulkAnalysisRunner(FakePipeline(), FakeStore(), sleep=AsyncMock())

    _, events = await _run(runner, [audio("a.mp3"), audio("b.mp3")])

    # every file is announced as pending before any work starts
    assert [(e.file_index, e.phase) for e in events[:2]] == [
        (0, ProgressPhase.PENDING),
        (1, ProgressPhase.PENDING),
    ]
    for index in (0, 1):
        progress = [e.progress for e in events if e.file_index == index]
        assert progress == sorted(progress)
        assert len(set(progress)) == len(progress)
        assert progress[-1] == 100
    assert all(e.bulk_session_id == 42 for e in events)


async def test_tracker_snapshot():
    runner = BulkAnalysisRunner(FakePipeline(failing={"b.mp3"}), FakeStore(), sleep=AsyncMock())
    _, events = await _run(runner, [audio("a.mp3"), audio("b.mp3")])

    tracker = ProgressTracker()
    for event in events:
        snapshot = tracker.apply(event)

    assert snapshot["bulk_session_id"] == 42
    assert snapshot["total"] == 2
    assert snapshot["completed"] == 1
    assert snapshot["failed"] == 1
    assert snapshot["progress"] == 100
    assert [f["status"] for f in snapshot["files"]] == ["completed", "error"]


async def test_summary_averages_only_completed_files():
    pipeline = FakePipeline(scores={"a.mp3": 0.6, "b.mp3": 0.2, "c.mp3": -0.2})
    store = FakeStore()
    runner = BulkAnalysisRunner(pipeline, store, sleep=AsyncMock())

    outcome, _ = await _run(runner, [audio("a.mp3"), audio("b.mp3"), audio("c.mp3")])

    assert [r.overall_score for r in outcome.results] == [8.0, 6.0, 4.0]
    summary = store.summaries[0]
    assert summary.avg_overall_score == 6.0
    assert summary.sentiment_counts == {"POSITIVE": 1, "NEUTRAL": 1, "NEGATIVE": 1}
    assert sum(summary.sentiment_percentages.values()) == pytest.approx(100.0)
    assert summary.to_columns()["status"] == "completed"


async def test_default_session_name_and_language_validation():
    store = FakeStore()
    runner = BulkAnalysisRunner(FakePipeline(), store, sleep=AsyncMock())

    await runner.run([audio("a.mp3")], "TA", user_id=3)
    user_id, name, language, total = store.session_args
    assert (user_id, language, total) == (3, "ta", 1)
    assert name.startswith("Bulk Analysis - ")

    with pytest.raises(InvalidLanguageError):
        await runner.run([audio("a.mp3")], "fr", user_id=3)


async def test_channel_closed_even_when_run_fails():
    channel = ProgressChannel()
    runner = BulkAnalysisRunner(FakePipeline(), FakeStore(), sleep=AsyncMock())

    with pytest.raises(ValueError):
        await runner.run([], "en", user_id=1, events=channel)

    assert await _collect(channel) == []


def test_summary_without_successes():
    failed = FileAnalysis(file_name="x.mp3", processing_order=1, status="failed", error="boom")

    summary = compute_bulk_summary([failed])

    assert summary.completed_files == 0
    assert summary.avg_overall_score == 0.0
    assert summary.strongest_areas == []
    assert summary.to_columns()["status"] == "failed"
    assert "No files were analyzed successfully" in summary.batch_summary


# ============================================
# Against the real repository (SQLite)
# ============================================

class UnreliableRepository(BulkAnalysisRepository):
    """Real repository whose writes for the listed files always fail."""

    def __init__(self, failing: set[str]):
        self.failing = failing

    async def save_file_analysis(self, session_id, result):
        if result.file_name in self.failing:
            raise ConnectionError("database unavailable")
        return await super().save_file_analysis(session_id, result)


async def test_retry_after_failed_recount_leaves_one_row(db):
    repo = BulkAnalysisRepository()
    recount = bulk_repository_module._recount
    calls = []

    async def recount_failing_once(session, session_id):
        calls.append(session_id)
        if len(calls) == 1:
            raise ConnectionError("connection reset")
        return await recount(session, session_id)

    runner = BulkAnalysisRunner(FakePipeline(), repo, save_attempts=3, sleep=AsyncMock())
    with patch.object(bulk_repository_module, "_recount", recount_failing_once):
        outcome = await runner.run([audio("a.mp3")], "en", user_id=1)

    rows = await repo.get_file_results(outcome.bulk_session_id)
    assert [r.file_name for r in rows] == ["a.mp3"]
    assert outcome.persisted_count == 1
    assert (await repo.get_session(outcome.bulk_session_id)).completed_files == 1


async def test_unsaved_file_not_counted_on_session(db):
    repo = UnreliableRepository(failing={"b.mp3"})
    runner = BulkAnalysisRunner(FakePipeline(), repo, save_attempts=3, sleep=AsyncMock())

    outcome = await runner.run([audio("a.mp3"), audio("b.mp3")], "en", user_id=1)

    assert outcome.persisted_count == 1
    assert outcome.unsaved_files == ["b.mp3"]
    session = await repo.get_session(outcome.bulk_session_id)
    assert (session.completed_files, session.failed_files) == (1, 0)
    assert session.avg_overall_score == 8.0
    assert len(await repo.get_file_results(outcome.bulk_session_id)) == 1


async def test_failed_file_stored_as_failed_row(db):
    repo = BulkAnalysisRepository()
    runner = BulkAnalysisRunner(FakePipeline(failing={"b.mp3"}), repo, sleep=AsyncMock())

    outcome = await runner.run([audio("a.mp3"), audio("b.mp3")], "en", user_id=1)

    rows = await repo.get_file_results(outcome.bulk_session_id)
    assert [(r.file_name, r.status) for r in rows] == [("a.mp3", "completed"), ("b.mp3", "failed")]
    assert "transcription failed" in rows[1].error_message
    assert rows[1].overall_score == 0.0
    session = await repo.get_session(outcome.bulk_session_id)
    assert (session.completed_files, session.failed_files, session.status) == (1, 1, "completed")
