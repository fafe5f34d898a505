"""
Persistence for bulk analysis sessions and their per-file results.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, func, delete
from sqlalchemy.orm import selectinload

from callqa.models import BulkAnalysisSession, BulkFileResult
from callqa.schemas import FileAnalysis, SentimentDetails
from callqa.services.analysis_repository import sentiment_columns
from callqa.services.bulk_summary import BulkSummary
from callqa.services.database import get_db


def _aspect(details: SentimentDetails, score: float) -> dict:
    data = details.model_dump(mode="json")
    data["overall_score"] = score
    return data


def file_result_columns(result: FileAnalysis) -> dict:
    """Column values of a bulk_file_results row for one analyzed file."""
    columns = {
        "file_name": result.file_name,
        "file_size": result.file_size,
        "processing_order": result.processing_order,
        "status": result.status,
        "call_summary": result.summary,
        "overall_score": result.overall_score,
        "processing_time": result.processing_time,
        "error_message": result.error,
        "started_at": result.started_at,
        "completed_at": result.completed_at,
    }
    if result.call is None:
        return columns

    analysis = result.call.analysis
    agent = analysis.agent_sentiment
    columns.update(
        transcription=result.call.transcription,
        translation=result.call.translation,
        call_opening_score=result.scores.call_opening,
        call_closing_score=result.scores.call_closing,
        speaking_quality_score=result.scores.speaking_quality,
        call_opening_analysis=_aspect(agent.call_opening, result.scores.call_opening),
        call_closing_analysis=_aspect(agent.call_closing, result.scores.call_closing),
        speaking_quality_analysis=_aspect(agent.call_quality, result.scores.speaking_quality),
        keywords=result.call.keywords,
        **sentiment_columns(analysis),
    )
    return columns


async def _recount(session, session_id: int) -> BulkAnalysisSession | None:
    """Refresh the session counters from its rows, inside the caller's transaction."""
    row = await session.get(BulkAnalysisSession, session_id)
    if row is None:
        return None
    counts = await session.execute(
        select(BulkFileResult.status, func.count(BulkFileResult.id))
        .where(BulkFileResult.bulk_session_id == session_id)
        .group_by(BulkFileResult.status)
    )
    by_status = dict(counts.all())
    row.completed_files = by_status.get("completed", 0)
    row.failed_files = by_status.get("failed", 0)
    if row.status == "processing" and row.completed_files + row.failed_files >= row.total_files:
        row.status = "completed"
    await session.flush()
    return row


class BulkAnalysisRepository:
    """CRUD over bulk_analysis_sessions / bulk_file_results."""

    async def create_session(
        self,
        user_id: int,
        session_name: str,
        source_language: str,
        total_files: int,
    ) -> BulkAnalysisSession:
        async with get_db() as session:
            row = BulkAnalysisSession(
                user_id=user_id,
                session_name=session_name,
                source_language=source_language,
                total_files=total_files,
                completed_files=0,
                failed_files=0,
                status="processing",
            )
            session.add(row)
            await session.flush()
            return row

    async def get_session(self, session_id: int, with_files: bool = False) -> BulkAnalysisSession | None:
        async with get_db() as session:
            query = select(BulkAnalysisSession).where(BulkAnalysisSession.id == session_id)
            if with_files:
                query = query.options(selectinload(BulkAnalysisSession.file_results))
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def list_sessions(self, user_id: int, limit: int = 20, offset: int = 0) -> list[BulkAnalysisSession]:
        async with get_db() as session:
            result = await session.execute(
                select(BulkAnalysisSession)
                .where(BulkAnalysisSession.user_id == user_id)
                .order_by(BulkAnalysisSession.created_at.desc(), BulkAnalysisSession.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def get_file_results(self, session_id: int) -> list[BulkFileResult]:
        async with get_db() as session:
            result = await session.execute(
                select(BulkFileResult)
                .where(BulkFileResult.bulk_session_id == session_id)
                .order_by(BulkFileResult.processing_order, BulkFileResult.id)
            )
            return list(result.scalars().all())

    async def create_file_result(self, session_id: int, columns: dict) -> BulkFileResult:
        async with get_db() as session:
            row = BulkFileResult(bulk_session_id=session_id, **columns)
            session.add(row)
            await session.flush()
            return row

    async def save_file_analysis(self, session_id: int, result: FileAnalysis) -> BulkFileResult:
        """
        Insert the row for an analyzed file and refresh the session counters.

        Both happen in one transaction: a failed recount rolls the insert back,
        so retrying never leaves two rows for the same file.
        """
        async with get_db() as session:
            row = BulkFileResult(bulk_session_id=session_id, **file_result_columns(result))
            session.add(row)
            await session.flush()
            await _recount(session, session_id)
            return row

    async def update_file_result_status(
        self,
        session_id: int,
        file_id: int,
        status: str,
        error_message: str | None = None,
    ) -> BulkFileResult | None:
        async with get_db() as session:
            result = await session.execute(
                select(BulkFileResult).where(
                    BulkFileResult.id == file_id,
                    BulkFileResult.bulk_session_id == session_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            row.status = status
            if error_message is not None:
                row.error_message = error_message
            if status in ("completed", "failed"):
                row.completed_at = datetime.now(timezone.utc)
            elif status == "processing" and row.started_at is None:
                row.started_at = datetime.now(timezone.utc)
            await session.flush()
            await _recount(session, session_id)
            return row

    async def update_progress(self, session_id: int) -> BulkAnalysisSession | None:
        """
        Recount completed/failed files from the result rows.

        A session still `processing` becomes `completed` once every file is
        accounted for.
        """
        async with get_db() as session:
            return await _recount(session, session_id)

    async def update_summary(self, session_id: int, columns: dict) -> BulkAnalysisSession | None:
        async with get_db() as session:
            row = await session.get(BulkAnalysisSession, session_id)
            if row is None:
                return None
            for key, value in columns.items():
                setattr(row, key, value)
            await session.flush()
            return row

    async def save_summary(self, session_id: int, summary: BulkSummary) -> BulkAnalysisSession | None:
        return await self.update_summary(session_id, summary.to_columns())

    async def delete_session(self, session_id: int) -> bool:
        async with get_db() as session:
            await session.execute(delete(BulkFileResult).where(BulkFileResult.bulk_session_id == session_id))
            result = await session.execute(delete(BulkAnalysisSession).where(BulkAnalysisSession.id == session_id))
            return result.rowcount > 0

    async def user_stats(self, user_id: int, days: int = 30) -> dict:
        """Activity of a user over the last `days` days."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        async with get_db() as session:
            row = (await session.execute(
                select(
                    func.count(BulkAnalysisSession.id),
                    func.coalesce(func.sum(BulkAnalysisSession.total_files), 0),
                    func.coalesce(func.sum(BulkAnalysisSession.completed_files), 0),
                    func.coalesce(func.sum(BulkAnalysisSession.failed_files), 0),
                    func.avg(BulkAnalysisSession.avg_overall_score),
                    func.avg(BulkAnalysisSession.positive_sentiment_percentage),
                ).where(
                    BulkAnalysisSession.user_id == user_id,
                    BulkAnalysisSession.created_at >= since,
                )
            )).one()

        sessions, files, completed, failed, avg_score, avg_positive = row
        return {
            "days": days,
            "total_sessions": sessions,
            "total_files": int(files),
            "completed_files": int(completed),
            "failed_files": int(failed),
            "avg_overall_score": round(avg_score, 2) if avg_score is not None else None,
            "avg_positive_sentiment_percentage": round(avg_positive, 2) if avg_positive is not None else None,
        }


# Singleton instance
bulk_repository = BulkAnalysisRepository()
