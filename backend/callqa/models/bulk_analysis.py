"""
SQLAlchemy models for bulk (batch) analysis.
"""
from sqlalchemy import Column, Integer, String, Float, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from callqa.models.base import Base, JSONType, isoformat, utcnow


BULK_SESSION_STATUSES = ("processing", "completed", "failed", "cancelled")
FILE_RESULT_STATUSES = ("pending", "processing", "completed", "failed")


class BulkAnalysisSession(Base):
    """
    A batch of call recordings submitted together.

    Counters are recomputed from the file rows (see BulkAnalysisRepository.update_progress);
    aggregate columns are written once when the batch finishes.
    """
    __tablename__ = "bulk_analysis_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    session_name = Column(String(255), nullable=False)
    source_language = Column(String(10), nullable=False, default="en")
    total_files = Column(Integer, nullable=False, default=0)
    completed_files = Column(Integer, nullable=False, default=0)
    failed_files = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="processing")

    avg_overall_score = Column(Float)
    avg_call_opening_score = Column(Float)
    avg_call_closing_score = Column(Float)
    avg_speaking_quality_score = Column(Float)
    positive_sentiment_count = Column(Integer, default=0)
    neutral_sentiment_count = Column(Integer, default=0)
    negative_sentiment_count = Column(Integer, default=0)
    positive_sentiment_percentage = Column(Float)

    batch_summary = Column(Text)
    key_insights = Column(JSONType)  # {strongest_areas, improvement_areas, common_issues}
    top_keywords = Column(JSONType)  # [str]
    recommendations = Column(Text)
    total_processing_time = Column(Float)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    file_results = relationship(
        "BulkFileResult",
        back_populates="session",
        order_by="BulkFileResult.processing_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_bulk_sessions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<BulkAnalysisSession(id={self.id}, status={self.status}, files={self.total_files})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_name": self.session_name,
            "source_language": self.source_language,
            "total_files": self.total_files,
            "completed_files": self.completed_files,
            "failed_files": self.failed_files,
            "status": self.status,
            "avg_overall_score": self.avg_overall_score,
            "avg_call_opening_score": self.avg_call_opening_score,
            "avg_call_closing_score": self.avg_call_closing_score,
            "avg_speaking_quality_score": self.avg_speaking_quality_score,
            "positive_sentiment_count": self.positive_sentiment_count or 0,
            "neutral_sentiment_count": self.neutral_sentiment_count or 0,
            "negative_sentiment_count": self.negative_sentiment_count or 0,
            "positive_sentiment_percentage": self.positive_sentiment_percentage,
            "batch_summary": self.batch_summary,
            "key_insights": self.key_insights,
            "top_keywords": self.top_keywords or [],
            "recommendations": self.recommendations,
            "total_processing_time": self.total_processing_time,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class BulkFileResult(Base):
    """Outcome of one file within a batch."""
    __tablename__ = "bulk_file_results"

    id = Column(Integer, primary_key=True)
    bulk_session_id = Column(
        Integer,
        ForeignKey("bulk_analysis_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_name = Column(String(255), nullable=False)
    file_size = Column(Integer)
    processing_order = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending")

    transcription = Column(Text)
    translation = Column(Text)
    call_summary = Column(Text)
    agent_coaching = Column(Text)

    overall_score = Column(Float)
    call_opening_score = Column(Float)
    call_closing_score = Column(Float)
    speaking_quality_score = Column(Float)

    customer_sentiment = Column(String(20))
    customer_sentiment_score = Column(Float)
    customer_sentiment_justification = Column(Text)
    agent_sentiment = Column(String(20))
    agent_sentiment_score = Column(Float)
    agent_sentiment_justification = Column(Text)

    call_opening_analysis = Column(JSONType)
    call_closing_analysis = Column(JSONType)
    speaking_quality_analysis = Column(JSONType)
    keywords = Column(JSONType)

    processing_time = Column(Float)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    session = relationship("BulkAnalysisSession", back_populates="file_results")

    def __repr__(self) -> str:
        return f"<BulkFileResult(session={self.bulk_session_id}, file={self.file_name!r}, status={self.status})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bulk_session_id": self.bulk_session_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "processing_order": self.processing_order,
            "status": self.status,
            "transcription": self.transcription,
            "translation": self.translation,
            "call_summary": self.call_summary,
            "agent_coaching": self.agent_coaching,
            "overall_score": self.overall_score,
            "call_opening_score": self.call_opening_score,
            "call_closing_score": self.call_closing_score,
            "speaking_quality_score": self.speaking_quality_score,
            "customer_sentiment": self.customer_sentiment,
            "customer_sentiment_score": self.customer_sentiment_score,
            "customer_sentiment_justification": self.customer_sentiment_justification,
            "agent_sentiment": self.agent_sentiment,
            "agent_sentiment_score": self.agent_sentiment_score,
            "agent_sentiment_justification": self.agent_sentiment_justification,
            "call_opening_analysis": self.call_opening_analysis,
            "call_closing_analysis": self.call_closing_analysis,
            "speaking_quality_analysis": self.speaking_quality_analysis,
            "keywords": self.keywords or [],
            "processing_time": self.processing_time,
            "error_message": self.error_message,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
        }
