"""
Tests for the Gemini client: key rotation, translation validation and the
analysis response parsing.
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from callqa.config import Settings
from callqa.errors import AIServiceError, NoApiKeysError
from callqa.schemas import ComprehensiveAnalysis
from callqa.services.analysis_pipeline import AnalysisPipeline
from callqa.services.gemini import (
    TRANSLATION_NEEDED_PREFIX,
    GeminiClient,
    clean_translation,
    looks_translated,
)

from conftest import analysis_payload


def gemini_response(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def mock_transport_client(client: GeminiClient, handler) -> None:
    client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ============================================
# Key rotation
# ============================================

async def test_rotation_returns_first_success():
    client = GeminiClient(api_keys=["k1", "k2", "k3"])
    call = AsyncMock(side_effect=[RuntimeError("quota"), "ok"])

    assert await client.execute_with_key_rotation(call) == "ok"
    assert [c.args[0] for c in call.await_args_list] == ["k1", "k2"]


async def test_rotation_tries_every_key_then_reraises_last_error():
    client = GeminiClient(api_keys=["k1", "k2", "k3"])
    last = ValueError("third key failed")
    call = AsyncMock(side_effect=[RuntimeError("first"), RuntimeError("second"), last])

    with pytest.raises(ValueError) as exc_info:
        await client.execute_with_key_rotation(call)

    assert exc_info.value is last
    assert call.await_count == 3


async def test_rotation_without_keys():
    client = GeminiClient(api_keys=[])
    call = AsyncMock()

    with pytest.raises(NoApiKeysError, match="no API keys configured"):
        await client.execute_with_key_rotation(call)
    call.assert_not_awaited()


async def test_generate_sends_key_header_and_rotates_on_http_error():
    seen_keys = []

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.headers["x-goog-api-key"]
        seen_keys.append(key)
        assert request.url.path.endswith("/models/gemini-2.5-flash:generateContent")
        if key == "bad":
            return httpx.Response(429, json={"error": {"message": "quota exceeded"}})
        return httpx.Response(200, json=gemini_response("hello"))

    client = GeminiClient(api_keys=["bad", "good"])
    mock_transport_client(client, handler)

    assert await client.generate([{"text": "hi"}], 0.2) == "hello"
    assert seen_keys == ["bad", "good"]
    await client.close()


async def test_blocked_prompt_is_an_ai_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    client = GeminiClient(api_keys=["k1"])
    mock_transport_client(client, handler)

    with pytest.raises(AIServiceError, match="SAFETY"):
        await client.generate([{"text": "hi"}], 0.2)
    await client.close()


def test_key_pool_order_and_dedup():
    settings = Settings(gemini_api_keys="k_extra, k2 ,")
    environ = {"API_KEY": "k1", "API_KEY_2": "k2", "API_KEY_3": "k3", "API_KEY_5": "k1"}

    assert settings.api_key_pool(environ) == ["k2", "k1", "k3", "k_extra"]


# ============================================
# Translation
# ============================================

async def test_english_is_not_translated():
    client = GeminiClient(api_keys=["k1"])
    client.generate = AsyncMock()

    assert await client.translate_text("Agent: Hello", "en") == "Agent: Hello"
    client.generate.assert_not_awaited()


async def test_translation_cleans_preamble():
    client = GeminiClient(api_keys=["k1"])
    client.generate = AsyncMock(return_value="Here is the translation: Agent: How can I help you with the order?")

    result = await client.translate_text("एजेंट: नमस्ते", "hi")

    assert result == "Agent: How can I help you with the order?"


async def test_untranslated_output_retries_then_flags():
    client = GeminiClient(api_keys=["k1"])
    source = "எப்படி இருக்கிறீர்கள்"
    client.generate = AsyncMock(side_effect=[source, "இன்னும் தமிழ்"])

    result = await client.translate_text(source, "ta")

    assert result == TRANSLATION_NEEDED_PREFIX + source
    assert client.generate.await_count == 2
    retry_parts = client.generate.await_args_list[1].args[0]
    assert retry_parts[0]["text"].startswith("Translate to English:")


async def test_untranslated_output_recovered_by_retry():
    client = GeminiClient(api_keys=["k1"])
    client.generate = AsyncMock(side_effect=["ನಮಸ್ಕಾರ", "Hello, how is the weather in the city?"])

    assert await client.translate_text("ನಮಸ್ಕಾರ", "kn") == "Hello, how is the weather in the city?"


def test_looks_translated():
    assert looks_translated("नमस्ते", "The customer is happy", "hi")
    assert not looks_translated("नमस्ते", "नमस्ते", "hi")
    assert not looks_translated("नमस्ते", "The नमस्ते customer", "hi")
    assert not looks_translated("x", "", "hi")
    assert clean_translation('Translation: "Hello there"') == "Hello there"


# ============================================
# Analysis
# ============================================

async def test_analyze_call_parses_fenced_json():
    client = GeminiClient(api_keys=["k1"])
    client.generate = AsyncMock(return_value="```json\n" + json.dumps(analysis_payload()) + "\n```")

    analysis = await client.analyze_call("Agent: Hello")

    assert analysis.customer_sentiment.sentiment.value == "POSITIVE"
    assert analysis.agent_sentiment.call_opening.score == 0.6
    assert client.generate.await_args.kwargs["response_schema"]["required"][0] == "customerSentiment"


async def test_analyze_call_rejects_invalid_payload():
    client = GeminiClient(api_keys=["k1"])
    client.generate = AsyncMock(return_value='{"summary": "missing fields"}')

    with pytest.raises(AIServiceError, match="Invalid analysis response"):
        await client.analyze_call("Agent: Hello")


async def test_extract_keywords_deduplicates():
    client = GeminiClient(api_keys=["k1"])
    client.generate = AsyncMock(return_value='{"keywords": ["refund", " refund ", "billing", ""]}')

    assert await client.extract_keywords("text") == ["refund", "billing"]


async def test_pipeline_falls_back_to_transcription_when_translation_fails():
    ai = AsyncMock()
    ai.translate_text.side_effect = AIServiceError("translation down")
    ai.analyze_call.return_value = ComprehensiveAnalysis.model_validate(analysis_payload())
    ai.extract_keywords.return_value = ["refund"]

    result = await AnalysisPipeline(ai).analyze_transcript("வணக்கம்", "ta")

    assert result.translation == "வணக்கம்"
    assert result.keywords == ["refund"]
    ai.analyze_call.assert_awaited_once_with("வணக்கம்")
    ai.extract_keywords.assert_awaited_once_with("வணக்கம்")
