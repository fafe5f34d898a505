"""
Domain models shared by the AI client, the analysis pipeline and the routers.

Gemini answers in camelCase JSON (customerSentiment, callOpening...), so the
analysis models accept both camelCase aliases and snake_case field names.
"""
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from callqa.errors import InvalidLanguageError


SUPPORTED_LANGUAGES: dict[str, str] = {
    "en": "English",
    "ta": "Tamil",
    "kn": "Kannada",
    "ml": "Malayalam",
    "hi": "Hindi",
}


def validate_language(code: str | None) -> str:
    """Return the normalized language code or raise InvalidLanguageError."""
    normalized = (code or "").strip().lower()
    if normalized not in SUPPORTED_LANGUAGES:
        raise InvalidLanguageError(code or "")
    return normalized


class Sentiment(str, Enum):
    POSITIVE = "POSITIVE"
    NEUTRAL = "NEUTRAL"
    NEGATIVE = "NEGATIVE"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SentimentDetails(CamelModel):
    """Sentiment label with a confidence score in [-1, 1]."""
    sentiment: Sentiment
    score: float = 0.0
    justification: str = ""

    @field_validator("sentiment", mode="before")
    @classmethod
    def _upper(cls, value):
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("score")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return max(-1.0, min(1.0, value))


class AgentSentiment(CamelModel):
    positive: SentimentDetails
    call_opening: SentimentDetails
    call_quality: SentimentDetails
    call_closing: SentimentDetails


class ComprehensiveAnalysis(CamelModel):
    customer_sentiment: SentimentDetails
    agent_sentiment: AgentSentiment
    summary: str
    agent_coaching: str


def _to_ten(score: float) -> float:
    """Map a [-1, 1] sentiment score onto the 0-10 coaching scale."""
    return round((score + 1.0) * 5.0, 1)


class CoachingScores(BaseModel):
    """0-10 coaching scores derived from the sentiment analysis."""
    call_opening: float = 0.0
    call_closing: float = 0.0
    speaking_quality: float = 0.0
    overall: float = 0.0

    @classmethod
    def from_analysis(cls, analysis: ComprehensiveAnalysis) -> "CoachingScores":
        agent = analysis.agent_sentiment
        opening = _to_ten(agent.call_opening.score)
        closing = _to_ten(agent.call_closing.score)
        speaking = _to_ten(agent.call_quality.score)
        customer = _to_ten(analysis.customer_sentiment.score)
        overall = 0.25 * opening + 0.35 * speaking + 0.25 * closing + 0.15 * customer
        return cls(
            call_opening=opening,
            call_closing=closing,
            speaking_quality=speaking,
            overall=round(overall, 1),
        )


class CallAnalysis(BaseModel):
    """Everything produced for one call recording."""
    transcription: str
    translation: str
    analysis: ComprehensiveAnalysis
    keywords: list[str] = Field(default_factory=list)

    @property
    def scores(self) -> CoachingScores:
        return CoachingScores.from_analysis(self.analysis)


class FileAnalysis(BaseModel):
    """
    Outcome of one file in a bulk run.

    Failed files keep `call=None`, zero scores and the raw error message.
    """
    file_name: str
    file_size: int = 0
    processing_order: int
    status: str  # "completed" | "failed"
    call: CallAnalysis | None = None
    scores: CoachingScores = Field(default_factory=CoachingScores)
    processing_time: float = 0.0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and self.call is not None

    @property
    def overall_score(self) -> float:
        return self.scores.overall

    @property
    def summary(self) -> str:
        return self.call.analysis.summary if self.call is not None else "Processing failed"
