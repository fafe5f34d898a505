"""
Gemini REST client with API-key rotation.

Every AI operation (transcription, translation, analysis, keyword extraction)
is one generateContent call wrapped in execute_with_key_rotation(): the same
request is replayed with the next key of the pool until one succeeds.
There is no backoff between keys and no key is ever benched; the pool order
is the same for every call.
"""
import base64
import json
import logging
import re
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from pydantic import ValidationError

from callqa.config import settings
from callqa.errors import AIServiceError, NoApiKeysError
from callqa.schemas import SUPPORTED_LANGUAGES, ComprehensiveAnalysis

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_OUTPUT_TOKENS = 8192
TRANSCRIBE_TEMPERATURE = 0.2
TRANSLATE_TEMPERATURE = 0.1
FALLBACK_TRANSLATE_TEMPERATURE = 0.0
ANALYSIS_TEMPERATURE = 0.2
TRANSLATION_NEEDED_PREFIX = "[ENGLISH TRANSLATION NEEDED] "

# Unicode blocks of the Indic scripts we accept as input
SCRIPT_RANGES = {
    "hi": re.compile(r"[\u0900-\u097F]"),
    "ta": re.compile(r"[\u0B80-\u0BFF]"),
    "kn": re.compile(r"[\u0C80-\u0CFF]"),
    "ml": re.compile(r"[\u0D00-\u0D7F]"),
}
ENGLISH_WORDS = re.compile(
    r"\b(the|and|is|are|was|were|have|has|will|would|could|should|a|an|in|on|at|to|for|of|with|by)\b",
    re.IGNORECASE,
)
TRANSLATION_PREFIX = re.compile(
    r"^(here is the translation:?|here's the translation:?|translation:|english translation:)",
    re.IGNORECASE,
)

_SENTIMENT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "sentiment": {"type": "STRING", "enum": ["POSITIVE", "NEGATIVE", "NEUTRAL"]},
        "score": {"type": "NUMBER"},
        "justification": {"type": "STRING"},
    },
    "required": ["sentiment", "score", "justification"],
}

ANALYSIS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "customerSentiment": _SENTIMENT_SCHEMA,
        "agentSentiment": {
            "type": "OBJECT",
            "properties": {
                "positive": _SENTIMENT_SCHEMA,
                "callOpening": _SENTIMENT_SCHEMA,
                "callQuality": _SENTIMENT_SCHEMA,
                "callClosing": _SENTIMENT_SCHEMA,
            },
            "required": ["positive", "callOpening", "callQuality", "callClosing"],
        },
        "summary": {"type": "STRING"},
        "agentCoaching": {"type": "STRING"},
    },
    "required": ["customerSentiment", "agentSentiment", "summary", "agentCoaching"],
}

KEYWORDS_SCHEMA = {
    "type": "OBJECT",
    "properties": {"keywords": {"type": "ARRAY", "items": {"type": "STRING"}}},
    "required": ["keywords"],
}

ANALYSIS_PROMPT = """Analyze the following customer support call transcript. Work out which speaker is the customer and which is the agent.

Return JSON with:
1. customerSentiment: the customer's overall sentiment (POSITIVE, NEGATIVE or NEUTRAL), a score from -1 to 1 and a short justification.
2. agentSentiment: four aspects of the agent's behaviour, each with sentiment, score (-1 to 1) and justification:
   - positive: attitude, friendliness and enthusiasm
   - callOpening: greeting, introduction and initial rapport
   - callQuality: problem solving, product knowledge and clarity
   - callClosing: resolution confirmation, next steps and professional closure
3. summary: the customer's issue, what the agent did and the outcome.
4. agentCoaching: specific, actionable feedback on tone, politeness and problem solving, covering what went well and what to improve.

Transcript:
{text}"""

KEYWORDS_PROMPT = (
    "Extract the important keywords and key phrases from the following call text. "
    "Focus on customer service topics, products and customer sentiment.\n\nText:\n{text}"
)


def transcription_prompt(language: str) -> str:
    name = SUPPORTED_LANGUAGES.get(language, "English")
    labels = (
        "Label each turn with the speaker (Agent: or Customer:) and put every turn on its own line."
    )
    if language == "en":
        return f"Transcribe this English call recording exactly as spoken. {labels}"
    return (
        f"Transcribe this {name} call recording exactly as spoken, in {name} script. "
        f"DO NOT translate to English; keep every word in {name}. {labels}"
    )


def translation_prompt(text: str, language: str) -> str:
    name = SUPPORTED_LANGUAGES.get(language, language)
    return (
        f"You are a professional translator. Translate the following {name} call transcript "
        "into ENGLISH ONLY.\n"
        "- Output only the English translation, no notes or preamble.\n"
        "- Keep the speaker labels (Agent:, Customer:) and line breaks.\n"
        "- Do not leave any words in the original script.\n\n"
        f"{name} text:\n{text}"
    )


def clean_translation(text: str) -> str:
    """Strip the preambles and wrapping quotes models like to add."""
    text = TRANSLATION_PREFIX.sub("", text.strip()).strip()
    return re.sub(r"^[\"']|[\"']$", "", text).strip()


def looks_translated(original: str, translated: str, language: str) -> bool:
    """Heuristic check that a translation is actually English."""
    if not translated or translated.lower() == original.lower():
        return False
    script = SCRIPT_RANGES.get(language)
    if script is not None and script.search(translated):
        return False
    return bool(ENGLISH_WORDS.search(translated))


def _parse_json(text: str) -> Any:
    cleaned = text.strip()
    # Some models wrap JSON in a markdown fence even in JSON mode
    fence = re.match(r"^```(?:json)?\s*([\s\S]*?)\s*```$", cleaned)
    if fence:
        cleaned = fence.group(1)
    return json.loads(cleaned)


class GeminiClient:
    """Async Gemini client over the generateContent REST endpoint."""

    def __init__(
        self,
        api_keys: list[str],
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120.0,
    ):
        self.api_keys = list(api_keys)
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls) -> "GeminiClient":
        return cls(
            api_keys=settings.api_key_pool(),
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout=settings.gemini_timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def execute_with_key_rotation(self, call: Callable[[str], Awaitable[T]]) -> T:
        """
        Run `call(api_key)` with each key of the pool in order.

        Returns the first successful result. When every key fails the last
        error is re-raised unchanged.
        """
        if not self.api_keys:
            raise NoApiKeysError()

        for attempt, key in enumerate(self.api_keys, start=1):
            try:
                return await call(key)
            except Exception as e:
                logger.warning(
                    "Gemini call failed with key #%d/%d: %s",
                    attempt, len(self.api_keys), e,
                )
                if attempt == len(self.api_keys):
                    raise

    async def _generate_with_key(
        self,
        api_key: str,
        parts: list[dict],
        temperature: float,
        response_schema: dict | None = None,
    ) -> str:
        generation_config: dict[str, Any] = {
            "temperature": temperature,
            "maxOutputTokens": MAX_OUTPUT_TOKENS,
        }
        if response_schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = response_schema

        response = await self._get_client().post(
            f"{self.base_url}/models/{self.model}:generateContent",
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            json={
                "contents": [{"role": "user", "parts": parts}],
                "generationConfig": generation_config,
            },
        )
        response.raise_for_status()
        data = response.json()

        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise AIServiceError(f"Gemini returned no output ({reason})")
        text = "".join(
            part.get("text", "")
            for part in (candidates[0].get("content") or {}).get("parts", [])
        ).strip()
        if not text:
            raise AIServiceError("Gemini returned an empty response")
        return text

    async def generate(
        self,
        parts: list[dict],
        temperature: float,
        response_schema: dict | None = None,
    ) -> str:
        """One generateContent call, rotated across the key pool."""
        return await self.execute_with_key_rotation(
            lambda key: self._generate_with_key(key, parts, temperature, response_schema)
        )

    async def transcribe_audio(self, audio: bytes, mime_type: str, language: str) -> str:
        """Transcribe a recording in its source language with speaker labels."""
        parts = [
            {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(audio).decode("ascii")}},
            {"text": transcription_prompt(language)},
        ]
        try:
            return await self.generate(parts, TRANSCRIBE_TEMPERATURE)
        except Exception as e:
            logger.error("Transcription failed: %s", e)
            raise AIServiceError(f"Failed to transcribe audio: {e}") from e

    async def translate_text(self, text: str, source_language: str) -> str:
        """
        Translate a transcript into English.

        English input is returned as is. An output that still looks untranslated
        gets one retry with a bare prompt; if that fails too the source text is
        returned behind TRANSLATION_NEEDED_PREFIX.
        """
        if source_language == "en" or not text.strip():
            return text

        try:
            raw = await self.generate(
                [{"text": translation_prompt(text, source_language)}],
                TRANSLATE_TEMPERATURE,
            )
        except Exception as e:
            logger.error("Translation failed: %s", e)
            raise AIServiceError(f"Failed to translate text: {e}") from e

        translated = clean_translation(raw)
        if looks_translated(text, translated, source_language):
            return translated

        logger.warning("Translation from %s looks untranslated, retrying with a simple prompt", source_language)
        try:
            raw = await self.generate(
                [{"text": f"Translate to English:\n\n{text}"}],
                FALLBACK_TRANSLATE_TEMPERATURE,
            )
            retry = clean_translation(raw)
            if looks_translated(text, retry, source_language):
                return retry
        except Exception as e:
            logger.warning("Fallback translation failed: %s", e)

        return TRANSLATION_NEEDED_PREFIX + text

    async def analyze_call(self, text: str) -> ComprehensiveAnalysis:
        """Sentiment, summary and coaching for a (translated) transcript."""
        try:
            raw = await self.generate(
                [{"text": ANALYSIS_PROMPT.format(text=text)}],
                ANALYSIS_TEMPERATURE,
                response_schema=ANALYSIS_SCHEMA,
            )
        except Exception as e:
            logger.error("Comprehensive analysis failed: %s", e)
            raise AIServiceError(f"Failed to analyze call: {e}") from e

        try:
            return ComprehensiveAnalysis.model_validate(_parse_json(raw))
        except (ValueError, ValidationError) as e:
            raise AIServiceError(f"Invalid analysis response: {e}") from e

    async def extract_keywords(self, text: str) -> list[str]:
        try:
            raw = await self.generate(
                [{"text": KEYWORDS_PROMPT.format(text=text)}],
                ANALYSIS_TEMPERATURE,
                response_schema=KEYWORDS_SCHEMA,
            )
            data = _parse_json(raw)
        except Exception as e:
            logger.error("Keyword extraction failed: %s", e)
            raise AIServiceError(f"Failed to extract keywords: {e}") from e

        keywords: list[str] = []
        for keyword in data.get("keywords", []) if isinstance(data, dict) else []:
            keyword = str(keyword).strip()
            if keyword and keyword not in keywords:
                keywords.append(keyword)
        return keywords


# Singleton instance
gemini_client = GeminiClient.from_settings()
