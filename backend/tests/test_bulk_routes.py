"""
Tests for bulk analysis routes: sessions, file results, summaries, exports
and server-side runs.
"""
import os
from unittest.mock import patch

from callqa.models import BulkAnalysisSession, BulkFileResult

from conftest import USER_ID


def make_bulk_session(session_id: int = 4, user_id: int = USER_ID, files: int = 0) -> BulkAnalysisSession:
    session = BulkAnalysisSession(
        id=session_id,
        user_id=user_id,
        session_name="October batch",
        source_language="en",
        total_files=max(files, 1),
        completed_files=files,
        failed_files=0,
        status="completed" if files else "processing",
        avg_overall_score=7.0 if files else None,
        positive_sentiment_count=files,
        top_keywords=["refund"],
    )
    session.file_results = [
        BulkFileResult(
            id=100 + i,
            bulk_session_id=session_id,
            file_name=f"call_{i}.mp3",
            processing_order=i,
            status="completed",
            overall_score=7.0,
            customer_sentiment="POSITIVE",
            call_summary="Refund processed.",
            keywords=["refund"],
        )
        for i in range(1, files + 1)
    ]
    return session


# ============================================
# Sessions
# ============================================

async def test_create_bulk_session(client, auth_headers):
    client.mock_bulk_repository.create_session.return_value = make_bulk_session()

    resp = await client.post(
        "/api/bulk-analysis/sessions",
        json={"sessionName": "October batch", "sourceLanguage": "ml", "totalFiles": 3},
        headers=auth_headers,
    )

    assert resp.status_code == 201
    assert resp.json()["session"]["id"] == 4
    client.mock_bulk_repository.create_session.assert_awaited_once_with(
        user_id=USER_ID, session_name="October batch", source_language="ml", total_files=3,
    )


async def test_create_bulk_session_validation(client, auth_headers):
    resp = await client.post(
        "/api/bulk-analysis/sessions",
        json={"sessionName": "x" * 256, "sourceLanguage": "en", "totalFiles": 0},
        headers=auth_headers,
    )

    assert resp.status_code == 400
    fields = {d["field"] for d in resp.json()["details"]}
    assert fields == {"sessionName", "totalFiles"}


async def test_get_bulk_session_with_files(client, auth_headers):
    client.mock_bulk_repository.get_session.return_value = make_bulk_session(files=2)

    resp = await client.get("/api/bulk-analysis/sessions/4", headers=auth_headers)

    assert resp.status_code == 200
    files = resp.json()["session"]["file_results"]
    assert [f["processing_order"] for f in files] == [1, 2]


async def test_bulk_session_ownership(client, auth_headers, other_auth_headers):
    client.mock_bulk_repository.get_session.return_value = make_bulk_session()

    resp = await client.delete("/api/bulk-analysis/sessions/4", headers=other_auth_headers)
    assert resp.status_code == 403
    client.mock_bulk_repository.delete_session.assert_not_awaited()

    client.mock_bulk_repository.get_session.return_value = None
    resp = await client.delete("/api/bulk-analysis/sessions/4", headers=auth_headers)
    assert resp.status_code == 404


async def test_store_file_result_updates_progress(client, auth_headers):
    repo = client.mock_bulk_repository
    repo.get_session.return_value = make_bulk_session()
    repo.create_file_result.return_value = BulkFileResult(
        id=1, bulk_session_id=4, file_name="a.mp3", processing_order=1, status="completed",
    )
    repo.update_progress.return_value = make_bulk_session(files=1)

    resp = await client.post(
        "/api/bulk-analysis/sessions/4/files",
        json={
            "fileName": "a.mp3",
            "processingOrder": 1,
            "overallScore": 7.5,
            "customerSentiment": "POSITIVE",
            "keywords": ["refund"],
        },
        headers=auth_headers,
    )

    assert resp.status_code == 201
    columns = repo.create_file_result.await_args.args[1]
    assert columns["customer_sentiment"] == "POSITIVE"
    assert columns["status"] == "completed"
    repo.update_progress.assert_awaited_once_with(4)


async def test_store_file_result_rejects_out_of_range_score(client, auth_headers):
    client.mock_bulk_repository.get_session.return_value = make_bulk_session()

    resp = await client.post(
        "/api/bulk-analysis/sessions/4/files",
        json={"fileName": "a.mp3", "processingOrder": 1, "overallScore": 11},
        headers=auth_headers,
    )
    assert resp.status_code == 400


async def test_update_file_status(client, auth_headers):
    repo = client.mock_bulk_repository
    repo.get_session.return_value = make_bulk_session()
    repo.update_file_result_status.return_value = None

    resp = await client.put(
        "/api/bulk-analysis/sessions/4/files/9", json={"status": "failed"}, headers=auth_headers,
    )
    assert resp.status_code == 404

    resp = await client.put(
        "/api/bulk-analysis/sessions/4/files/9", json={"status": "exploded"}, headers=auth_headers,
    )
    assert resp.status_code == 400


async def test_update_summary_only_sends_given_fields(client, auth_headers):
    repo = client.mock_bulk_repository
    repo.get_session.return_value = make_bulk_session()
    repo.update_summary.return_value = make_bulk_session(files=2)

    resp = await client.put(
        "/api/bulk-analysis/sessions/4/summary",
        json={"avgOverallScore": 7.25, "positiveSentimentPercentage": 50, "status": "completed"},
        headers=auth_headers,
    )

    assert resp.status_code == 200
    assert repo.update_summary.await_args.args[1] == {
        "avg_overall_score": 7.25,
        "positive_sentiment_percentage": 50.0,
        "status": "completed",
    }


async def test_update_summary_validates_percentage(client, auth_headers):
    client.mock_bulk_repository.get_session.return_value = make_bulk_session()

    resp = await client.put(
        "/api/bulk-analysis/sessions/4/summary",
        json={"positiveSentimentPercentage": 120},
        headers=auth_headers,
    )
    assert resp.status_code == 400


async def test_stats_days_range(client, auth_headers):
    client.mock_bulk_repository.user_stats.return_value = {"days": 7}

    resp = await client.get("/api/bulk-analysis/stats?days=7", headers=auth_headers)
    assert resp.status_code == 200
    client.mock_bulk_repository.user_stats.assert_awaited_once_with(USER_ID, days=7)

    resp = await client.get("/api/bulk-analysis/stats?days=0", headers=auth_headers)
    assert resp.status_code == 400


# ============================================
# Exports
# ============================================

async def test_export_excel_download(client, auth_headers):
    client.mock_bulk_repository.get_session.return_value = make_bulk_session(files=2)

    resp = await client.get("/api/bulk-analysis/sessions/4/export/excel", headers=auth_headers)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/vnd.openxmlformats")
    assert 'filename="bulk_analysis_4_' in resp.headers["content-disposition"]
    assert resp.content[:2] == b"PK"


async def test_export_summary_text(client, auth_headers):
    client.mock_bulk_repository.get_session.return_value = make_bulk_session(files=1)

    resp = await client.get("/api/bulk-analysis/sessions/4/export/summary", headers=auth_headers)

    assert resp.status_code == 200
    assert "BULK ANALYSIS SUMMARY" in resp.text


async def test_export_zip_rejects_unknown_format(client, auth_headers):
    resp = await client.get("/api/bulk-analysis/sessions/4/export/zip?formats=excel,docx", headers=auth_headers)

    assert resp.status_code == 400
    client.mock_bulk_repository.get_session.assert_not_awaited()


async def test_export_of_other_users_session(client, other_auth_headers):
    client.mock_bulk_repository.get_session.return_value = make_bulk_session(files=1)

    resp = await client.get("/api/bulk-analysis/sessions/4/export/training-json", headers=other_auth_headers)
    assert resp.status_code == 403


# ============================================
# Runs
# ============================================

async def test_start_run_stages_files_and_queues_task(client, auth_headers, tmp_path):
    resp = await client.post(
        "/api/bulk-analysis/runs",
        files=[
            ("files", ("first call.mp3", b"audio-1", "audio/mpeg")),
            ("files", ("second.wav", b"audio-2", "audio/wav")),
        ],
        data={"sourceLanguage": "ta", "sessionName": "Tamil batch"},
        headers=auth_headers,
    )

    assert resp.status_code == 202
    data = resp.json()
    assert data["status"] == "queued"
    assert data["total_files"] == 2

    call = client.mock_celery.send_task.call_args
    assert call.args[0] == "callqa_worker.bulk_analysis.run_bulk_analysis"
    assert call.kwargs["queue"] == "bulk"
    task_kwargs = call.kwargs["kwargs"]
    assert task_kwargs["user_id"] == USER_ID
    assert task_kwargs["source_language"] == "ta"
    assert [f["name"] for f in task_kwargs["files"]] == ["first call.mp3", "second.wav"]
    for staged in task_kwargs["files"]:
        assert staged["path"].startswith(str(tmp_path))
        assert os.path.exists(staged["path"])

    run = await client.mock_redis.get_run(data["run_id"])
    assert run["task_id"] == "test-task-id-123"
    assert run["user_id"] == USER_ID


async def test_start_run_rejected_upload_leaves_nothing_staged(client, auth_headers, tmp_path):
    with patch("callqa.config.settings.max_upload_size", 10):
        resp = await client.post(
            "/api/bulk-analysis/runs",
            files=[
                ("files", ("first.mp3", b"audio-1", "audio/mpeg")),
                ("files", ("second.mp3", b"x" * 20, "audio/mpeg")),
            ],
            data={"sourceLanguage": "en"},
            headers=auth_headers,
        )

    assert resp.status_code == 413
    assert list((tmp_path / "bulk").iterdir()) == []
    client.mock_celery.send_task.assert_not_called()

    resp = await client.post(
        "/api/bulk-analysis/runs",
        files=[
            ("files", ("first.mp3", b"audio-1", "audio/mpeg")),
            ("files", ("notes.txt", b"hello", "text/plain")),
        ],
        data={"sourceLanguage": "en"},
        headers=auth_headers,
    )

    assert resp.status_code == 400
    assert list((tmp_path / "bulk").iterdir()) == []


async def test_start_run_rejects_bad_language(client, auth_headers):
    resp = await client.post(
        "/api/bulk-analysis/runs",
        files=[("files", ("a.mp3", b"audio", "audio/mpeg"))],
        data={"sourceLanguage": "de"},
        headers=auth_headers,
    )
    assert resp.status_code == 400
    client.mock_celery.send_task.assert_not_called()


async def test_run_status_reflects_task_progress(client, auth_headers, other_auth_headers):
    await client.mock_redis.set_run("run1", {"run_id": "run1", "user_id": USER_ID, "task_id": "t1", "total_files": 2})
    task = client.mock_celery.AsyncResult.return_value
    task.status = "PROGRESS"
    task.info = {"progress": 55.0, "completed": 1, "failed": 0}

    resp = await client.get("/api/bulk-analysis/runs/run1", headers=auth_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "running"
    assert data["progress"]["progress"] == 55.0

    resp = await client.get("/api/bulk-analysis/runs/run1", headers=other_auth_headers)
    assert resp.status_code == 403

    resp = await client.get("/api/bulk-analysis/runs/missing", headers=auth_headers)
    assert resp.status_code == 404


async def test_cancel_run(client, auth_headers):
    await client.mock_redis.set_run("run1", {"run_id": "run1", "user_id": USER_ID, "task_id": "t1"})

    resp = await client.post("/api/bulk-analysis/runs/run1/cancel", headers=auth_headers)

    assert resp.status_code == 200
    run = await client.mock_redis.get_run("run1")
    assert run["cancelled"] is True
    assert run["status"] == "cancelled"
