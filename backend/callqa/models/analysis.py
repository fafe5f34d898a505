"""
SQLAlchemy models for single-file analysis.

An AnalysisSession describes one uploaded call recording; its AnalysisResult
holds transcription, translation and the structured sentiment analysis.
"""
from sqlalchemy import Column, Integer, String, Float, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from callqa.models.base import Base, JSONType, isoformat, utcnow


class AnalysisSession(Base):
    """One user's single-file analysis run."""
    __tablename__ = "analysis_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    session_name = Column(String(255), nullable=False)
    source_language = Column(String(10), nullable=False, default="en")
    audio_file_name = Column(String(255))
    audio_file_size = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    result = relationship(
        "AnalysisResult",
        back_populates="session",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_analysis_sessions_file", "user_id", "audio_file_name", "audio_file_size"),
    )

    def __repr__(self) -> str:
        return f"<AnalysisSession(id={self.id}, user={self.user_id}, name={self.session_name!r})>"

    def to_dict(self, include_result: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "session_name": self.session_name,
            "source_language": self.source_language,
            "audio_file_name": self.audio_file_name,
            "audio_file_size": self.audio_file_size,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_result:
            data["result"] = self.result.to_dict() if self.result is not None else None
        return data


class AnalysisResult(Base):
    """
    Analysis output for a session.

    session_id is unique: a session never holds more than one result.
    """
    __tablename__ = "analysis_results"

    id = Column(Integer, primary_key=True)
    session_id = Column(
        Integer,
        ForeignKey("analysis_sessions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    transcription = Column(Text)
    translation = Column(Text)
    summary = Column(Text)
    agent_coaching = Column(Text)
    customer_sentiment = Column(String(20))
    customer_sentiment_score = Column(Float)
    customer_sentiment_justification = Column(Text)
    agent_sentiment = Column(String(20))
    agent_sentiment_score = Column(Float)
    agent_sentiment_justification = Column(Text)
    agent_sentiment_details = Column(JSONType)  # {positive, call_opening, call_quality, call_closing}
    keywords = Column(JSONType)  # [str]
    created_at = Column(DateTime(timezone=True), default=utcnow)

    session = relationship("AnalysisSession", back_populates="result")

    def __repr__(self) -> str:
        return f"<AnalysisResult(session={self.session_id}, customer={self.customer_sentiment})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "transcription": self.transcription,
            "translation": self.translation,
            "summary": self.summary,
            "agent_coaching": self.agent_coaching,
            "customer_sentiment": self.customer_sentiment,
            "customer_sentiment_score": self.customer_sentiment_score,
            "customer_sentiment_justification": self.customer_sentiment_justification,
            "agent_sentiment": self.agent_sentiment,
            "agent_sentiment_score": self.agent_sentiment_score,
            "agent_sentiment_justification": self.agent_sentiment_justification,
            "agent_sentiment_details": self.agent_sentiment_details,
            "keywords": self.keywords or [],
            "created_at": isoformat(self.created_at),
        }
