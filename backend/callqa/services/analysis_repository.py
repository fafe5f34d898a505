"""
Persistence for single-file analysis sessions and their results.
"""
import logging

from sqlalchemy import select, func, or_, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from callqa.errors import DuplicateResultError
from callqa.models import AnalysisSession, AnalysisResult
from callqa.schemas import CallAnalysis, ComprehensiveAnalysis
from callqa.services.database import get_db

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 50


def sentiment_columns(analysis: ComprehensiveAnalysis) -> dict:
    """Flatten customer/agent sentiment into the shared result columns."""
    customer = analysis.customer_sentiment
    # the agent's overall demeanour is the "positive" aspect
    agent = analysis.agent_sentiment.positive
    return {
        "customer_sentiment": customer.sentiment.value,
        "customer_sentiment_score": customer.score,
        "customer_sentiment_justification": customer.justification,
        "agent_sentiment": agent.sentiment.value,
        "agent_sentiment_score": agent.score,
        "agent_sentiment_justification": agent.justification,
        "agent_coaching": analysis.agent_coaching,
    }


class AnalysisRepository:
    """CRUD and search over analysis_sessions / analysis_results."""

    async def create_session(
        self,
        user_id: int,
        session_name: str,
        source_language: str,
        audio_file_name: str | None = None,
        audio_file_size: int | None = None,
    ) -> AnalysisSession:
        async with get_db() as session:
            row = AnalysisSession(
                user_id=user_id,
                session_name=session_name,
                source_language=source_language,
                audio_file_name=audio_file_name,
                audio_file_size=audio_file_size,
                result=None,  # marks the relationship loaded, to_dict() must not lazy-load
            )
            session.add(row)
            await session.flush()
            return row

    async def get_session(self, session_id: int) -> AnalysisSession | None:
        """Session with its result eagerly loaded."""
        async with get_db() as session:
            result = await session.execute(
                select(AnalysisSession)
                .options(selectinload(AnalysisSession.result))
                .where(AnalysisSession.id == session_id)
            )
            return result.scalar_one_or_none()

    async def find_by_file_details(
        self, user_id: int, file_name: str, file_size: int
    ) -> AnalysisSession | None:
        """
        Latest session of this user for the same file (name + size).

        Used to avoid re-analyzing a recording that was already processed.
        """
        async with get_db() as session:
            result = await session.execute(
                select(AnalysisSession)
                .options(selectinload(AnalysisSession.result))
                .where(
                    AnalysisSession.user_id == user_id,
                    AnalysisSession.audio_file_name == file_name,
                    AnalysisSession.audio_file_size == file_size,
                )
                .order_by(AnalysisSession.created_at.desc(), AnalysisSession.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_sessions(self, user_id: int, limit: int = 20, offset: int = 0) -> list[AnalysisSession]:
        async with get_db() as session:
            result = await session.execute(
                select(AnalysisSession)
                .options(selectinload(AnalysisSession.result))
                .where(AnalysisSession.user_id == user_id)
                .order_by(AnalysisSession.created_at.desc(), AnalysisSession.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def rename_session(self, session_id: int, session_name: str) -> AnalysisSession | None:
        async with get_db() as session:
            row = await session.get(
                AnalysisSession, session_id, options=[selectinload(AnalysisSession.result)]
            )
            if row is None:
                return None
            row.session_name = session_name
            await session.flush()
            return row

    async def delete_session(self, session_id: int) -> bool:
        async with get_db() as session:
            await session.execute(delete(AnalysisResult).where(AnalysisResult.session_id == session_id))
            result = await session.execute(delete(AnalysisSession).where(AnalysisSession.id == session_id))
            return result.rowcount > 0

    async def has_result(self, session_id: int) -> bool:
        async with get_db() as session:
            result = await session.execute(
                select(AnalysisResult.id).where(AnalysisResult.session_id == session_id)
            )
            return result.first() is not None

    async def create_result(self, session_id: int, call: CallAnalysis) -> AnalysisResult:
        """
        Store the analysis of a session.

        Raises DuplicateResultError if the session already has one, whether
        caught by the lookup or by the unique constraint under a race.
        """
        if await self.has_result(session_id):
            raise DuplicateResultError(session_id)

        analysis = call.analysis
        row = AnalysisResult(
            session_id=session_id,
            transcription=call.transcription,
            translation=call.translation,
            summary=analysis.summary,
            agent_sentiment_details=analysis.agent_sentiment.model_dump(mode="json"),
            keywords=call.keywords,
            **sentiment_columns(analysis),
        )
        try:
            async with get_db() as session:
                session.add(row)
                await session.flush()
        except IntegrityError as e:
            logger.info("Concurrent result insert for session %s: %s", session_id, e)
            raise DuplicateResultError(session_id) from e
        return row

    async def recent_results(self, user_id: int, limit: int = 10) -> list[dict]:
        async with get_db() as session:
            result = await session.execute(
                select(AnalysisResult, AnalysisSession)
                .join(AnalysisSession, AnalysisResult.session_id == AnalysisSession.id)
                .where(AnalysisSession.user_id == user_id)
                .order_by(AnalysisResult.created_at.desc(), AnalysisResult.id.desc())
                .limit(limit)
            )
            return [self._result_with_session(r, s) for r, s in result.all()]

    async def search_results(self, user_id: int, query: str, limit: int = SEARCH_LIMIT) -> list[dict]:
        """Case-insensitive substring search over result text and session names."""
        pattern = f"%{query}%"
        async with get_db() as session:
            result = await session.execute(
                select(AnalysisResult, AnalysisSession)
                .join(AnalysisSession, AnalysisResult.session_id == AnalysisSession.id)
                .where(
                    AnalysisSession.user_id == user_id,
                    or_(
                        AnalysisResult.transcription.ilike(pattern),
                        AnalysisResult.translation.ilike(pattern),
                        AnalysisResult.summary.ilike(pattern),
                        AnalysisResult.agent_coaching.ilike(pattern),
                        AnalysisSession.session_name.ilike(pattern),
                    ),
                )
                .order_by(AnalysisResult.created_at.desc(), AnalysisResult.id.desc())
                .limit(limit)
            )
            return [self._result_with_session(r, s) for r, s in result.all()]

    async def user_stats(self, user_id: int) -> dict:
        async with get_db() as session:
            total_sessions = await session.scalar(
                select(func.count(AnalysisSession.id)).where(AnalysisSession.user_id == user_id)
            )
            rows = await session.execute(
                select(
                    AnalysisResult.customer_sentiment,
                    func.count(AnalysisResult.id),
                    func.avg(AnalysisResult.customer_sentiment_score),
                )
                .join(AnalysisSession, AnalysisResult.session_id == AnalysisSession.id)
                .where(AnalysisSession.user_id == user_id)
                .group_by(AnalysisResult.customer_sentiment)
            )

            sentiments = {"POSITIVE": 0, "NEUTRAL": 0, "NEGATIVE": 0}
            total_results = 0
            weighted_score = 0.0
            for label, count, avg_score in rows.all():
                total_results += count
                weighted_score += (avg_score or 0.0) * count
                if label in sentiments:
                    sentiments[label] = count

        return {
            "total_sessions": total_sessions or 0,
            "total_results": total_results,
            "sentiment_counts": sentiments,
            "avg_customer_sentiment_score": round(weighted_score / total_results, 3) if total_results else None,
        }

    @staticmethod
    def _result_with_session(result: AnalysisResult, session: AnalysisSession) -> dict:
        data = result.to_dict()
        data["session_name"] = session.session_name
        data["source_language"] = session.source_language
        data["audio_file_name"] = session.audio_file_name
        return data


# Singleton instance
analysis_repository = AnalysisRepository()
