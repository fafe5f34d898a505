"""
Single-call analysis pipeline: transcribe -> translate -> analyze + keywords.

Used directly by the /api/analysis/complete endpoint and step by step by the
bulk runner, which reports progress between the two halves.
"""
import asyncio
import logging

from callqa.schemas import CallAnalysis
from callqa.services.gemini import GeminiClient, gemini_client

logger = logging.getLogger(__name__)


class AnalysisPipeline:
    """Chains the Gemini operations for one recording."""

    def __init__(self, ai: GeminiClient):
        self.ai = ai

    async def transcribe(self, audio: bytes, mime_type: str, language: str) -> str:
        return await self.ai.transcribe_audio(audio, mime_type, language)

    async def analyze_transcript(self, transcription: str, language: str) -> CallAnalysis:
        """
        Translate (non-English only), then run the comprehensive analysis and
        keyword extraction concurrently on the English text.

        A failed translation is not fatal: the transcription is analyzed as is.
        """
        translation = transcription
        if language != "en":
            try:
                translation = await self.ai.translate_text(transcription, language)
            except Exception as e:
                logger.warning("Translation failed, analyzing original transcription: %s", e)

        analysis, keywords = await asyncio.gather(
            self.ai.analyze_call(translation),
            self.ai.extract_keywords(translation),
        )
        return CallAnalysis(
            transcription=transcription,
            translation=translation,
            analysis=analysis,
            keywords=keywords,
        )

    async def complete(self, audio: bytes, mime_type: str, language: str) -> CallAnalysis:
        transcription = await self.transcribe(audio, mime_type, language)
        return await self.analyze_transcript(transcription, language)


# Singleton instance
analysis_pipeline = AnalysisPipeline(gemini_client)
