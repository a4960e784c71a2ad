# tests/conftest.py
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from httpx import AsyncClient, ASGITransport

from callintel.auth.auth import AuthService
from callintel.core.config import Settings
from callintel.db.database import build_engine, build_session_factory, init_db
from callintel.models.models import CallSession, CallSessionStatus
from callintel.schemas.schemas import SttResult, TranscriptTurn, AnalysisResult
from callintel.security.audit_logger import AuditLogger
from callintel.services.pipeline import build_pipeline

WEBHOOK_SECRET = "test-webhook-secret"


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


class FakeSttService:
    """Speech-to-text double; queue exceptions in ``errors`` to fail calls in order."""

    provider_name = "fake-stt"

    def __init__(self):
        self.calls: List[str] = []
        self.errors: List[BaseException] = []
        self.delay: float = 0.0
        self.result = SttResult(
            text="caller: I'd like to order a large pepperoni pizza\nagent: Sure, that will be $18",
            turns=[
                TranscriptTurn(speaker="caller", start=0.0, end=3.1, text="I'd like to order a large pepperoni pizza"),
                TranscriptTurn(speaker="agent", start=3.4, end=5.0, text="Sure, that will be $18"),
            ],
            language="en",
            confidence=0.93
        )

    async def transcribe(self, audio_url: str) -> SttResult:
        self.calls.append(audio_url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class FakeAnalysisService:
    provider_name = "fake-llm"

    def __init__(self):
        self.calls: List[str] = []
        self.errors: List[BaseException] = []
        self.delay: float = 0.0
        self.result = AnalysisResult(
            summary="Caller ordered a large pepperoni pizza for pickup.",
            intent_primary="order_placement",
            intents_secondary=["pricing"],
            outcome="success",
            sentiment="positive",
            friction_points=[],
            improvement_suggestions=[],
            extracted_entities={"items_mentioned": ["pepperoni pizza"]},
            quality_score=88,
            raw="{}"
        )

    async def analyze(self, transcript_text: str, turns=None) -> AnalysisResult:
        self.calls.append(transcript_text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def test_settings():
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        WEBHOOK_SECRET=WEBHOOK_SECRET,
        PIPELINE_WORKERS_ENABLED=False,
        JOB_MAX_ATTEMPTS=3,
        JOB_RETRY_BACKOFF_SECONDS=[0.0, 0.0, 0.0],
        WORKER_POLL_INTERVAL_SECONDS=0.05,
        TRANSCRIPTION_TIMEOUT_SECONDS=0.2,
        ANALYSIS_TIMEOUT_SECONDS=0.2,
        DB_WRITE_TIMEOUT_SECONDS=5.0,
        AUTO_TRANSCRIBE=True,
        AUTO_ANALYZE=True
    )


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so every session gets its own connection."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'callintel_test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def fake_stt():
    return FakeSttService()


@pytest.fixture
def fake_analyzer():
    return FakeAnalysisService()


@pytest.fixture
def audit_logger():
    return AuditLogger()


@pytest.fixture
def pipeline(session_factory, test_settings, fake_stt, fake_analyzer, audit_logger):
    return build_pipeline(
        session_factory,
        test_settings,
        stt_service=fake_stt,
        analysis_service=fake_analyzer,
        audit=audit_logger
    )


@pytest.fixture
def make_call_session(session_factory):
    """Insert a CallSession row directly and return it."""

    async def _make(
        restaurant_id: str = "rest-1",
        status: str = CallSessionStatus.RECEIVED.value,
        from_number: Optional[str] = "+15551234567",
        duration_seconds: Optional[int] = 120,
        started_at: Optional[datetime] = None,
        audio_url: Optional[str] = "https://recordings.example.com/call.wav",
        **extra
    ) -> CallSession:
        started_at = started_at or datetime.now(timezone.utc) - timedelta(hours=1)
        call_session = CallSession(
            id=uuid.uuid4(),
            restaurant_id=restaurant_id,
            provider=extra.pop("provider", "vapi"),
            provider_call_id=extra.pop("provider_call_id", f"call-{uuid.uuid4().hex[:12]}"),
            direction="inbound",
            from_number=from_number,
            to_number=extra.pop("to_number", "+15550001111"),
            started_at=started_at,
            ended_at=started_at + timedelta(seconds=duration_seconds or 0),
            duration_seconds=duration_seconds,
            status=status,
            audio_url=audio_url,
            call_metadata=extra.pop("metadata", {}),
            **extra
        )
        async with session_factory() as db:
            db.add(call_session)
            await db.commit()
        return call_session

    return _make


def make_token(sub: str = "user-1", restaurant_id: Optional[str] = "rest-1", role: str = "manager") -> str:
    claims = {"sub": sub, "role": role}
    if restaurant_id is not None:
        claims["restaurant_id"] = restaurant_id
    return AuthService.create_access_token(claims)


def auth_headers(**claims) -> dict:
    return {"Authorization": f"Bearer {make_token(**claims)}"}


@pytest.fixture
async def api_client(pipeline):
    """HTTP client against the app with the test pipeline installed.

    ASGITransport does not run the lifespan, so the pipeline is attached here.
    """
    from callintel.main import app

    app.state.pipeline = pipeline
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    del app.state.pipeline
