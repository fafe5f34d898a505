"""Database models."""
from callqa.models.base import Base
from callqa.models.analysis import AnalysisSession, AnalysisResult
from callqa.models.bulk_analysis import BulkAnalysisSession, BulkFileResult

__all__ = ["Base", "AnalysisSession", "AnalysisResult", "BulkAnalysisSession", "BulkFileResult"]
