"""
Test fixtures for the Call QA backend.

Provides:
- FastAPI test client (httpx AsyncClient) with auth headers
- Mock Redis (in-memory dict-based) for bulk run records
- Mock repositories, AI client and Celery
- SQLite-backed database for repository tests
- Builders for analysis payloads
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from callqa.main import app
from callqa.models import Base
from callqa.schemas import CallAnalysis, ComprehensiveAnalysis
from callqa.services.auth import create_access_token

USER_ID = 7
OTHER_USER_ID = 8


# ============================================
# Sample data
# ============================================

def analysis_payload(
    customer: str = "POSITIVE",
    customer_score: float = 0.6,
    opening: float = 0.6,
    quality: float = 0.6,
    closing: float = 0.6,
    positive: float = 0.6,
) -> dict:
    """Gemini-shaped (camelCase) comprehensive analysis."""

    def aspect(score: float) -> dict:
        label = "POSITIVE" if score > 0.2 else "NEGATIVE" if score < -0.2 else "NEUTRAL"
        return {"sentiment": label, "score": score, "justification": f"scored {score}"}

    return {
        "customerSentiment": {"sentiment": customer, "score": customer_score, "justification": "Customer was calm"},
        "agentSentiment": {
            "positive": aspect(positive),
            "callOpening": aspect(opening),
            "callQuality": aspect(quality),
            "callClosing": aspect(closing),
        },
        "summary": "Customer asked about a refund; agent processed it.",
        "agentCoaching": "Confirm the next steps before closing.",
    }


def make_call(score: float = 0.6, customer: str = "POSITIVE", keywords: list[str] | None = None) -> CallAnalysis:
    """A CallAnalysis whose four coaching scores all equal (score + 1) * 5."""
    analysis = ComprehensiveAnalysis.model_validate(
        analysis_payload(customer=customer, customer_score=score, opening=score, quality=score, closing=score)
    )
    return CallAnalysis(
        transcription="Agent: Hello\nCustomer: Hi",
        translation="Agent: Hello\nCustomer: Hi",
        analysis=analysis,
        keywords=keywords if keywords is not None else ["refund", "billing"],
    )


# ============================================
# Mock Redis (in-memory)
# ============================================

class MockRedisClient:
    """In-memory Redis mock for testing."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def get_client(self):
        return self

    async def ping(self):
        return True

    async def close(self):
        pass

    async def set_run(self, run_id: str, data: dict, ttl: int = 86400):
        self._store[f"bulk_run:{run_id}"] = json.dumps(data)
        self._ttls[f"bulk_run:{run_id}"] = ttl

    async def get_run(self, run_id: str) -> dict | None:
        raw = self._store.get(f"bulk_run:{run_id}")
        if raw:
            return json.loads(raw)
        return None

    async def update_run(self, run_id: str, updates: dict) -> bool:
        current = await self.get_run(run_id)
        if current is None:
            return False
        current.update(updates)
        await self.set_run(run_id, current)
        return True


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token(USER_ID)}"}


@pytest.fixture
def other_auth_headers():
    return {"Authorization": f"Bearer {create_access_token(OTHER_USER_ID)}"}


@pytest.fixture
def mock_redis():
    """Provide an in-memory Redis mock."""
    return MockRedisClient()


@pytest.fixture
def mock_analysis_repository():
    return AsyncMock()


@pytest.fixture
def mock_bulk_repository():
    return AsyncMock()


@pytest.fixture
def mock_pipeline():
    pipeline = AsyncMock()
    pipeline.complete.return_value = make_call()
    return pipeline


@pytest.fixture
def mock_gemini():
    """Mock Gemini client."""
    client = AsyncMock()
    client.transcribe_audio.return_value = "Agent: Hello\nCustomer: Hi"
    client.translate_text.return_value = "Agent: Hello\nCustomer: Hi"
    client.analyze_call.return_value = ComprehensiveAnalysis.model_validate(analysis_payload())
    client.extract_keywords.return_value = ["refund", "billing"]
    return client


@pytest.fixture
def mock_celery():
    """Mock Celery app for task sending."""
    mock = MagicMock()
    mock_task = MagicMock()
    mock_task.id = "test-task-id-123"
    mock.send_task.return_value = mock_task
    mock_result = MagicMock()
    mock_result.status = "PENDING"
    mock_result.info = None
    mock_result.result = None
    mock.AsyncResult.return_value = mock_result
    return mock


@pytest.fixture
async def client(
    mock_redis,
    mock_analysis_repository,
    mock_bulk_repository,
    mock_pipeline,
    mock_gemini,
    mock_celery,
    tmp_path,
):
    """
    Async test client with all services mocked.

    Patches singleton services so routes use mocks instead of real connections.
    """
    with (
        patch("callqa.routers.analysis.analysis_repository", mock_analysis_repository),
        patch("callqa.routers.analysis.analysis_pipeline", mock_pipeline),
        patch("callqa.routers.analysis.gemini_client", mock_gemini),
        patch("callqa.routers.bulk_analysis.bulk_repository", mock_bulk_repository),
        patch("callqa.routers.bulk_analysis.redis_client", mock_redis),
        patch("callqa.routers.bulk_analysis.celery_app", mock_celery),
        patch("callqa.routers.sse.redis_client", mock_redis),
        patch("callqa.routers.sse.celery_app", mock_celery),
        patch("callqa.config.settings.upload_dir", str(tmp_path)),
    ):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            # Expose mocks on client for assertions
            ac.mock_redis = mock_redis  # type: ignore
            ac.mock_analysis_repository = mock_analysis_repository  # type: ignore
            ac.mock_bulk_repository = mock_bulk_repository  # type: ignore
            ac.mock_pipeline = mock_pipeline  # type: ignore
            ac.mock_gemini = mock_gemini  # type: ignore
            ac.mock_celery = mock_celery  # type: ignore
            yield ac


@pytest.fixture
async def db():
    """
    In-memory SQLite database swapped in for the application's session factory.

    StaticPool keeps a single connection so every get_db() sees the same tables.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    with patch("callqa.services.database.AsyncSessionLocal", session_factory):
        yield session_factory

    await engine.dispose()
