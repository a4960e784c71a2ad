# backend/callintel/services/workers.py
"""
Pipeline worker pools.

One pool per job type, each running a fixed number of asyncio tasks. A task
claims a job, calls the provider under a timeout, then hands the result to the
orchestrator under a database write timeout. Idle tasks sleep until the poll
interval elapses or the orchestrator signals new work.
"""

import asyncio
import logging
from typing import List, Optional

from callintel.core.config import Settings
from callintel.core.exceptions import ConflictError, PreconditionError, UpstreamProviderError
from callintel.models.models import JobType, PipelineJob
from callintel.services.job_orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class WorkerPool:
    """Bounded pool of claim-process loops for a single job type."""

    job_type: JobType
    provider_name: str = "provider"

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        settings: Settings,
        concurrency: int,
        provider_timeout: float
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self.concurrency = max(1, concurrency)
        self.provider_timeout = provider_timeout
        self.poll_interval = settings.WORKER_POLL_INTERVAL_SECONDS
        self.write_timeout = settings.DB_WRITE_TIMEOUT_SECONDS
        self.wakeup = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.orchestrator.register_wakeup(self.job_type, self.wakeup)
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"{self.job_type.value}-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"🚀 Started {self.concurrency} {self.job_type.value} workers")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"🛑 Stopped {self.job_type.value} workers")

    async def _worker_loop(self, index: int) -> None:
        while self._running:
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Claim failures (database unavailable) must not kill the loop
                logger.error(f"Error in {self.job_type.value} worker {index}: {e}")
                processed = False

            if not processed:
                await self._wait_for_work()

    async def _wait_for_work(self) -> None:
        try:
            await asyncio.wait_for(self.wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        self.wakeup.clear()

    async def run_once(self) -> bool:
        """Claim and process a single job. Returns False when the queue was empty."""
        job = await self.orchestrator.claim_next(self.job_type)
        if job is None:
            return False
        await self.process(job)
        return True

    async def process(self, job: PipelineJob) -> None:
        try:
            context = await asyncio.wait_for(self.prepare(job), timeout=self.write_timeout)
        except asyncio.TimeoutError:
            await self.orchestrator.fail_job(
                job, TimeoutError(f"Database read timed out after {self.write_timeout:.0f}s")
            )
            return
        except Exception as e:
            await self.orchestrator.fail_job(job, e)
            return

        try:
            result = await asyncio.wait_for(self.execute(job, context), timeout=self.provider_timeout)
        except asyncio.TimeoutError:
            await self.orchestrator.fail_job(
                job,
                UpstreamProviderError(
                    f"{self.provider_name} timed out after {self.provider_timeout:.0f}s",
                    provider=self.provider_name
                )
            )
            return
        except Exception as e:
            logger.warning(f"{self.provider_name} call failed for job {job.id}: {e}")
            await self.orchestrator.fail_job(job, e)
            return

        try:
            await asyncio.wait_for(self.complete(job, result), timeout=self.write_timeout)
        except ConflictError as e:
            logger.warning(f"Result for job {job.id} discarded: {e.detail}")
            await self.orchestrator.fail_job(job, e)
        except asyncio.TimeoutError:
            await self.orchestrator.fail_job(
                job, TimeoutError(f"Database write timed out after {self.write_timeout:.0f}s")
            )
        except Exception as e:
            logger.error(f"Failed to store result for job {job.id}: {e}")
            await self.orchestrator.fail_job(job, e)

    async def prepare(self, job: PipelineJob):
        """Load whatever the provider call needs from the database."""
        return None

    async def execute(self, job: PipelineJob, context):
        raise NotImplementedError

    async def complete(self, job: PipelineJob, result) -> None:
        raise NotImplementedError


class TranscriptionWorkerPool(WorkerPool):
    job_type = JobType.TRANSCRIPTION

    def __init__(self, orchestrator: JobOrchestrator, stt_service, settings: Settings,
                 concurrency: Optional[int] = None):
        super().__init__(
            orchestrator,
            settings,
            concurrency if concurrency is not None else settings.TRANSCRIPTION_CONCURRENCY,
            settings.TRANSCRIPTION_TIMEOUT_SECONDS
        )
        self.stt_service = stt_service
        self.provider_name = getattr(stt_service, "provider_name", "stt")

    async def execute(self, job: PipelineJob, context):
        audio_url = (job.payload or {}).get("audio_url")
        if not audio_url:
            raise PreconditionError("Transcription job has no audio URL")
        return await self.stt_service.transcribe(audio_url)

    async def complete(self, job: PipelineJob, result) -> None:
        await self.orchestrator.complete_transcription(job, result)


class AnalysisWorkerPool(WorkerPool):
    job_type = JobType.ANALYSIS

    def __init__(self, orchestrator: JobOrchestrator, analysis_service, settings: Settings,
                 concurrency: Optional[int] = None):
        super().__init__(
            orchestrator,
            settings,
            concurrency if concurrency is not None else settings.ANALYSIS_CONCURRENCY,
            settings.ANALYSIS_TIMEOUT_SECONDS
        )
        self.analysis_service = analysis_service
        self.provider_name = getattr(analysis_service, "provider_name", "analysis")

    async def prepare(self, job: PipelineJob):
        transcript = await self.orchestrator.load_transcript(job)
        if transcript is None:
            raise PreconditionError("Transcript missing for analysis")
        return transcript.transcript_text, (transcript.transcript_json or {}).get("turns", [])

    async def execute(self, job: PipelineJob, context):
        transcript_text, turns = context
        return await self.analysis_service.analyze(transcript_text, turns)

    async def complete(self, job: PipelineJob, result) -> None:
        await self.orchestrator.complete_analysis(job, result)
