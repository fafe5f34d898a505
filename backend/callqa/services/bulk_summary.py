"""
Aggregate statistics for a finished bulk run.

Only successfully analyzed files contribute to averages, sentiment shares and
keywords. Failed files are counted but never dragged into the averages as zeros.
"""
from collections import Counter
from dataclasses import dataclass, field, replace

from callqa.schemas import FileAnalysis, Sentiment

TOP_KEYWORDS = 10
IMPROVEMENT_THRESHOLD = 6.0
NEGATIVE_ISSUE_RATE = 0.3
LOW_SCORE_ISSUE_RATE = 0.4
NEGATIVE_RECOMMENDATION_RATE = 0.2

STANDING_RECOMMENDATIONS = [
    "Regular performance monitoring and feedback sessions",
    "Set specific improvement targets for underperforming areas",
]


def performance_rating(score: float) -> str:
    if score >= 8:
        return "Excellent"
    if score >= 6:
        return "Good"
    if score >= 4:
        return "Fair"
    return "Needs Improvement"


@dataclass(frozen=True)
class BulkSummary:
    total_files: int
    completed_files: int
    failed_files: int
    avg_overall_score: float = 0.0
    avg_call_opening_score: float = 0.0
    avg_call_closing_score: float = 0.0
    avg_speaking_quality_score: float = 0.0
    sentiment_counts: dict[str, int] = field(default_factory=dict)
    sentiment_percentages: dict[str, float] = field(default_factory=dict)
    top_keywords: list[str] = field(default_factory=list)
    strongest_areas: list[str] = field(default_factory=list)
    improvement_areas: list[str] = field(default_factory=list)
    common_issues: list[str] = field(default_factory=list)
    batch_summary: str = ""
    recommendations: str = ""
    total_processing_time: float = 0.0

    @property
    def positive_sentiment_percentage(self) -> float:
        return round(self.sentiment_percentages.get(Sentiment.POSITIVE.value, 0.0), 2)

    @property
    def key_insights(self) -> dict:
        return {
            "strongest_areas": self.strongest_areas,
            "improvement_areas": self.improvement_areas,
            "common_issues": self.common_issues,
            "sentiment_percentages": self.sentiment_percentages,
        }

    def to_columns(self) -> dict:
        """
        Aggregate column values for bulk_analysis_sessions.

        completed_files/failed_files are left out: they are recounted from the
        persisted rows, so a file whose save never went through is not counted.
        """
        return {
            "avg_overall_score": self.avg_overall_score,
            "avg_call_opening_score": self.avg_call_opening_score,
            "avg_call_closing_score": self.avg_call_closing_score,
            "avg_speaking_quality_score": self.avg_speaking_quality_score,
            "positive_sentiment_count": self.sentiment_counts.get(Sentiment.POSITIVE.value, 0),
            "neutral_sentiment_count": self.sentiment_counts.get(Sentiment.NEUTRAL.value, 0),
            "negative_sentiment_count": self.sentiment_counts.get(Sentiment.NEGATIVE.value, 0),
            "positive_sentiment_percentage": self.positive_sentiment_percentage,
            "batch_summary": self.batch_summary,
            "key_insights": self.key_insights,
            "top_keywords": self.top_keywords,
            "recommendations": self.recommendations,
            "total_processing_time": self.total_processing_time,
            "status": "completed" if self.completed_files else "failed",
        }


def _average(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _top_keywords(results: list[FileAnalysis]) -> list[str]:
    counts: Counter[str] = Counter()
    display: dict[str, str] = {}
    for result in results:
        for keyword in result.call.keywords:
            key = keyword.strip().lower()
            if not key:
                continue
            display.setdefault(key, keyword.strip())
            counts[key] += 1
    return [display[key] for key, _ in counts.most_common(TOP_KEYWORDS)]


def _batch_summary_text(summary: BulkSummary) -> str:
    if not summary.completed_files:
        return (
            f"Bulk Analysis Summary - {summary.total_files} Files Processed\n\n"
            f"No files were analyzed successfully ({summary.failed_files} failed)."
        )
    positive = summary.sentiment_percentages.get(Sentiment.POSITIVE.value, 0.0)
    topics = ", ".join(summary.top_keywords[:5]) or "none"
    return (
        f"Bulk Analysis Summary - {summary.total_files} Files Processed\n\n"
        f"Overall Performance: {performance_rating(summary.avg_overall_score)} "
        f"({summary.avg_overall_score:.1f}/10)\n\n"
        "Performance Breakdown:\n"
        f"- Call Opening: {summary.avg_call_opening_score:.1f}/10\n"
        f"- Speaking Quality: {summary.avg_speaking_quality_score:.1f}/10\n"
        f"- Call Closing: {summary.avg_call_closing_score:.1f}/10\n\n"
        f"Customer Satisfaction: {positive:.1f}% Positive\n\n"
        f"Top Discussion Topics: {topics}"
    )


def compute_bulk_summary(results: list[FileAnalysis], total_processing_time: float = 0.0) -> BulkSummary:
    """Build the batch summary from every file result of a run (failed ones included)."""
    completed = [r for r in results if r.succeeded]
    n = len(completed)

    overall = [r.scores.overall for r in completed]
    aspects = {
        "Call Opening": _average([r.scores.call_opening for r in completed]),
        "Speaking Quality": _average([r.scores.speaking_quality for r in completed]),
        "Call Closing": _average([r.scores.call_closing for r in completed]),
    }

    counts = {s.value: 0 for s in Sentiment}
    for r in completed:
        counts[r.call.analysis.customer_sentiment.sentiment.value] += 1
    percentages = {label: (count / n * 100 if n else 0.0) for label, count in counts.items()}

    avg_overall = _average(overall)
    negative_rate = counts[Sentiment.NEGATIVE.value] / n if n else 0.0
    low_score_rate = sum(1 for s in overall if s < IMPROVEMENT_THRESHOLD) / n if n else 0.0

    common_issues = []
    if negative_rate > NEGATIVE_ISSUE_RATE:
        common_issues.append("High customer dissatisfaction rate")
    if low_score_rate > LOW_SCORE_ISSUE_RATE:
        common_issues.append("Inconsistent call quality")

    recommendations = []
    if n and avg_overall < IMPROVEMENT_THRESHOLD:
        recommendations.append("Focus on comprehensive agent training programs")
    if negative_rate > NEGATIVE_RECOMMENDATION_RATE:
        recommendations.append("Implement customer satisfaction improvement initiatives")
    recommendations.extend(STANDING_RECOMMENDATIONS)

    summary = BulkSummary(
        total_files=len(results),
        completed_files=n,
        failed_files=len(results) - n,
        avg_overall_score=avg_overall,
        avg_call_opening_score=aspects["Call Opening"],
        avg_call_closing_score=aspects["Call Closing"],
        avg_speaking_quality_score=aspects["Speaking Quality"],
        sentiment_counts=counts,
        sentiment_percentages=percentages,
        top_keywords=_top_keywords(completed),
        strongest_areas=[name for name, _ in sorted(aspects.items(), key=lambda kv: kv[1], reverse=True)[:2]] if n else [],
        improvement_areas=[name for name, score in aspects.items() if n and score < IMPROVEMENT_THRESHOLD],
        common_issues=common_issues,
        recommendations="\n".join(recommendations),
        total_processing_time=round(total_processing_time, 2),
    )
    return replace(summary, batch_summary=_batch_summary_text(summary))
