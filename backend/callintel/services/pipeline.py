# backend/callintel/services/pipeline.py
"""
Wires the call conversation pipeline together.

Everything is constructed from an explicit session factory and settings so the
application and the tests can build independent instances.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from callintel.core.config import Settings
from callintel.security.audit_logger import AuditLogger
from callintel.services.call_session_store import CallSessionStore
from callintel.services.job_orchestrator import JobOrchestrator
from callintel.services.workers import TranscriptionWorkerPool, AnalysisWorkerPool
from callintel.services.review_service import ReviewService
from callintel.services.query_service import QueryService
from callintel.services.ingestion_service import IngestionService
from callintel.services.call_analysis_service import CallAnalysisService
from callintel.services.voice.deepgram_stt_service import DeepgramSTTService
from callintel.tasks.stale_job_reaper import start_reaper_task, stop_reaper_task

logger = logging.getLogger(__name__)


@dataclass
class ConversationPipeline:
    settings: Settings
    store: CallSessionStore
    orchestrator: JobOrchestrator
    transcription_workers: TranscriptionWorkerPool
    analysis_workers: AnalysisWorkerPool
    reviews: ReviewService
    queries: QueryService
    ingestion: IngestionService

    async def start(self) -> None:
        if not self.settings.PIPELINE_WORKERS_ENABLED:
            logger.info("Pipeline workers disabled; jobs will queue until a worker process runs")
            return
        self.transcription_workers.start()
        self.analysis_workers.start()
        start_reaper_task(
            self.orchestrator,
            self.settings.STALE_JOB_TIMEOUT_SECONDS,
            self.settings.STALE_JOB_SWEEP_INTERVAL_SECONDS
        )

    async def stop(self) -> None:
        await stop_reaper_task()
        await self.transcription_workers.stop()
        await self.analysis_workers.stop()


def build_pipeline(
    session_factory: async_sessionmaker,
    settings: Settings,
    stt_service=None,
    analysis_service=None,
    audit: Optional[AuditLogger] = None
) -> ConversationPipeline:
    """Compose the pipeline; provider services default to Deepgram and OpenAI."""
    stt_service = stt_service or DeepgramSTTService(settings)
    analysis_service = analysis_service or CallAnalysisService(settings)
    audit = audit or AuditLogger()
    store = CallSessionStore()

    orchestrator = JobOrchestrator(
        session_factory,
        store,
        audit,
        settings,
        stt_provider_name=getattr(stt_service, "provider_name", "stt")
    )

    return ConversationPipeline(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        transcription_workers=TranscriptionWorkerPool(orchestrator, stt_service, settings),
        analysis_workers=AnalysisWorkerPool(orchestrator, analysis_service, settings),
        reviews=ReviewService(session_factory, store, audit),
        queries=QueryService(session_factory, settings),
        ingestion=IngestionService(session_factory, store, orchestrator, audit, settings)
    )


def get_pipeline(request: Request) -> ConversationPipeline:
    """FastAPI dependency returning the pipeline built at startup."""
    return request.app.state.pipeline
