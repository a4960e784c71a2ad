# backend/callintel/services/job_orchestrator.py
"""
Job Orchestrator

Owns the lifecycle of transcription and analysis jobs:

- enqueue with idempotency (one queued/running job per session and type,
  backed by a partial unique index) and stage gating on the session state
- claim by conditional update so two workers never run the same job
- completion that commits result, job status and state transition together
- bounded retries with a backoff schedule, then a terminal failure that moves
  the session to its failed state and leaves an audit entry
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callintel.core.config import Settings
from callintel.core.exceptions import (
    ConflictError, ConversationPipelineError, PreconditionError, ValidationError
)
from callintel.models.models import (
    PipelineJob, JobType, JobStatus, CallSessionStatus, ACTIVE_JOB_STATUSES, utcnow
)
from callintel.schemas.schemas import SttResult, AnalysisResult
from callintel.security.audit_logger import AuditLogger
from callintel.services.call_session_store import CallSessionStore

logger = logging.getLogger(__name__)

S = CallSessionStatus

TRANSCRIBABLE_STATES = (
    S.RECEIVED.value,
    S.TRANSCRIPT_PENDING.value,
    S.TRANSCRIPT_FAILED.value,
)
ANALYZABLE_STATES = (
    S.TRANSCRIPT_READY.value,
    S.ANALYSIS_FAILED.value,
)

# (state while the job is active, state after the last attempt fails)
FAILURE_TRANSITIONS = {
    JobType.TRANSCRIPTION.value: (S.TRANSCRIPT_PENDING.value, S.TRANSCRIPT_FAILED.value),
    JobType.ANALYSIS.value: (S.ANALYZING.value, S.ANALYSIS_FAILED.value),
}

MAX_ERROR_LENGTH = 2000
CLAIM_RETRIES = 3


def is_retryable(error: BaseException) -> bool:
    """Transient failures are retried; bad input and missing preconditions are not."""
    if isinstance(error, (PreconditionError, ValidationError)):
        return False
    return getattr(error, "retryable", True)


class JobOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: CallSessionStore,
        audit: AuditLogger,
        settings: Settings,
        stt_provider_name: str = "deepgram"
    ):
        self.session_factory = session_factory
        self.store = store
        self.audit = audit
        self.settings = settings
        self.stt_provider_name = stt_provider_name
        self._wakeups: Dict[str, asyncio.Event] = {}

    # Wake-up push

    def register_wakeup(self, job_type: JobType, event: asyncio.Event) -> None:
        self._wakeups[JobType(job_type).value] = event

    def _signal(self, job_type: str) -> None:
        event = self._wakeups.get(job_type)
        if event is not None:
            event.set()

    def _signal_later(self, job_type: str, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(delay, self._signal, job_type)

    # Enqueue

    async def _active_job(self, db: AsyncSession, session_id: uuid.UUID, job_type: str) -> Optional[PipelineJob]:
        result = await db.execute(
            select(PipelineJob).where(
                PipelineJob.call_session_id == session_id,
                PipelineJob.job_type == job_type,
                PipelineJob.status.in_(ACTIVE_JOB_STATUSES)
            )
        )
        return result.scalar_one_or_none()

    async def _commit_new_job(
        self,
        db: AsyncSession,
        job: PipelineJob,
        session_id: uuid.UUID,
        job_type: str
    ) -> uuid.UUID:
        """Commit a freshly staged job, or return the job that won a concurrent race."""
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            winner = await self._active_job(db, session_id, job_type)
            if winner is None:
                raise ConflictError("Concurrent enqueue could not be resolved")
            logger.info(f"Enqueue race on session {session_id}: returning existing {job_type} job {winner.id}")
            return winner.id

        logger.info(f"✅ Enqueued {job_type} job {job.id} for session {session_id}")
        self._signal(job_type)
        return job.id

    async def enqueue_transcription(
        self,
        session_id: uuid.UUID,
        restaurant_id: str,
        audio_url: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> uuid.UUID:
        """Queue transcription for a session; returns the job id.

        Idempotent while a transcription job is queued or running. Allowed from
        ``received``, ``transcript_pending`` and ``transcript_failed`` (retry).
        """
        job_type = JobType.TRANSCRIPTION.value

        async with self.session_factory() as db:
            call_session = await self.store.get(db, session_id, restaurant_id)

            effective_url = audio_url or call_session.audio_url
            if not effective_url:
                raise ValidationError("No audio URL available for transcription")

            existing = await self._active_job(db, session_id, job_type)
            if existing is not None:
                logger.info(f"Transcription already active for session {session_id}: job {existing.id}")
                return existing.id

            current = call_session.status
            if current not in TRANSCRIBABLE_STATES:
                raise PreconditionError(
                    f"Cannot transcribe a call session in state {current}"
                )

            job = PipelineJob(
                id=uuid.uuid4(),
                job_type=job_type,
                call_session_id=session_id,
                restaurant_id=restaurant_id,
                status=JobStatus.QUEUED.value,
                max_attempts=self.settings.JOB_MAX_ATTEMPTS,
                payload={"audio_url": effective_url},
                next_run_at=utcnow()
            )
            db.add(job)

            try:
                if current != S.TRANSCRIPT_PENDING.value:
                    await self.store.advance_state(db, session_id, current, S.TRANSCRIPT_PENDING)
            except ConflictError:
                await db.rollback()
                winner = await self._active_job(db, session_id, job_type)
                if winner is not None:
                    return winner.id
                raise

            await self.audit.record(
                db,
                restaurant_id=restaurant_id,
                actor_id=actor_id,
                action="transcription_enqueued",
                entity_type="call_session",
                entity_id=session_id,
                details={"job_id": str(job.id), "previous_status": current}
            )
            return await self._commit_new_job(db, job, session_id, job_type)

    async def enqueue_analysis(
        self,
        session_id: uuid.UUID,
        restaurant_id: str,
        actor_id: Optional[str] = None
    ) -> uuid.UUID:
        """Queue analysis for a session; returns the job id.

        Gated on a ready transcript: allowed from ``transcript_ready``, or from
        ``analysis_failed`` as a retry.
        """
        job_type = JobType.ANALYSIS.value

        async with self.session_factory() as db:
            call_session = await self.store.get(db, session_id, restaurant_id)

            existing = await self._active_job(db, session_id, job_type)
            if existing is not None:
                logger.info(f"Analysis already active for session {session_id}: job {existing.id}")
                return existing.id

            current = call_session.status
            if current not in ANALYZABLE_STATES:
                raise PreconditionError(
                    f"Cannot analyze a call session in state {current}; transcript is not ready"
                )
            if await self.store.get_transcript(db, session_id) is None:
                raise PreconditionError("Call session has no transcript to analyze")

            job = PipelineJob(
                id=uuid.uuid4(),
                job_type=job_type,
                call_session_id=session_id,
                restaurant_id=restaurant_id,
                status=JobStatus.QUEUED.value,
                max_attempts=self.settings.JOB_MAX_ATTEMPTS,
                payload={},
                next_run_at=utcnow()
            )
            db.add(job)

            try:
                await self.store.advance_state(db, session_id, current, S.ANALYZING)
            except ConflictError:
                await db.rollback()
                winner = await self._active_job(db, session_id, job_type)
                if winner is not None:
                    return winner.id
                raise

            await self.audit.record(
                db,
                restaurant_id=restaurant_id,
                actor_id=actor_id,
                action="analysis_enqueued",
                entity_type="call_session",
                entity_id=session_id,
                details={"job_id": str(job.id), "previous_status": current}
            )
            return await self._commit_new_job(db, job, session_id, job_type)

    async def get_job(self, job_id: uuid.UUID) -> Optional[PipelineJob]:
        async with self.session_factory() as db:
            return await db.get(PipelineJob, job_id)

    # Claim

    async def claim_next(self, job_type: JobType) -> Optional[PipelineJob]:
        """Move the oldest due queued job of ``job_type`` to running and return it."""
        job_type = JobType(job_type).value

        async with self.session_factory() as db:
            for _ in range(CLAIM_RETRIES):
                now = utcnow()
                candidate_id = (await db.execute(
                    select(PipelineJob.id)
                    .where(
                        PipelineJob.job_type == job_type,
                        PipelineJob.status == JobStatus.QUEUED.value,
                        PipelineJob.next_run_at <= now
                    )
                    .order_by(PipelineJob.next_run_at, PipelineJob.created_at)
                    .limit(1)
                )).scalar_one_or_none()

                if candidate_id is None:
                    return None

                result = await db.execute(
                    update(PipelineJob)
                    .where(
                        PipelineJob.id == candidate_id,
                        PipelineJob.status == JobStatus.QUEUED.value
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempts=PipelineJob.attempts + 1,
                        started_at=now,
                        updated_at=now
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    job = (await db.execute(
                        select(PipelineJob).where(PipelineJob.id == candidate_id)
                    )).scalar_one()
                    await db.commit()
                    logger.info(
                        f"Claimed {job_type} job {job.id} (attempt {job.attempts}/{job.max_attempts})"
                    )
                    return job

                # Another worker got there first
                await db.rollback()

        return None

    # Completion

    async def _mark_succeeded(self, db: AsyncSession, job: PipelineJob) -> None:
        now = utcnow()
        result = await db.execute(
            update(PipelineJob)
            .where(
                PipelineJob.id == job.id,
                PipelineJob.status == JobStatus.RUNNING.value,
                PipelineJob.attempts == job.attempts
            )
            .values(
                status=JobStatus.SUCCEEDED.value,
                last_error=None,
                finished_at=now,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(f"Job {job.id} is no longer running this attempt")

    async def complete_transcription(self, job: PipelineJob, stt: SttResult) -> None:
        """Commit transcript, job success and ``transcript_ready`` as one unit."""
        async with self.session_factory() as db:
            # Nothing is written unless all three succeed
            await self.store.upsert_transcript(db, job.call_session_id, stt, self.stt_provider_name)
            await self._mark_succeeded(db, job)
            await self.store.advance_state(
                db, job.call_session_id, S.TRANSCRIPT_PENDING, S.TRANSCRIPT_READY
            )
            await db.commit()

        logger.info(f"✅ Transcript ready for session {job.call_session_id} ({len(stt.text)} chars)")

        if self.settings.AUTO_ANALYZE:
            try:
                await self.enqueue_analysis(job.call_session_id, job.restaurant_id)
            except ConversationPipelineError as e:
                logger.warning(f"⚠️ Auto-analysis not enqueued for session {job.call_session_id}: {e.detail}")

    async def complete_analysis(self, job: PipelineJob, analysis: AnalysisResult) -> None:
        """Commit insights, job success and ``completed`` as one unit."""
        async with self.session_factory() as db:
            # Nothing is written unless all three succeed
            await self.store.upsert_insights(db, job.call_session_id, analysis)
            await self._mark_succeeded(db, job)
            await self.store.advance_state(db, job.call_session_id, S.ANALYZING, S.COMPLETED)
            await db.commit()

        logger.info(f"✅ Analysis completed for session {job.call_session_id}")

    async def load_transcript(self, job: PipelineJob):
        async with self.session_factory() as db:
            return await self.store.get_transcript(db, job.call_session_id)

    # Failure

    async def fail_job(self, job: PipelineJob, error: BaseException) -> Optional[str]:
        """Record a failed attempt.

        Errors that cannot succeed on a retry (``retryable=False``, or a
        precondition/validation error) fail the job on the first attempt.
        Returns the job's new status, or None when the attempt was already
        settled elsewhere (for instance by the stale job reaper).
        """
        message = (str(error) or type(error).__name__)[:MAX_ERROR_LENGTH]
        now = utcnow()
        guard = (
            PipelineJob.id == job.id,
            PipelineJob.status == JobStatus.RUNNING.value,
            PipelineJob.attempts == job.attempts
        )

        async with self.session_factory() as db:
            if job.attempts < job.max_attempts and is_retryable(error):
                delay = self.settings.backoff_for_attempt(job.attempts)
                result = await db.execute(
                    update(PipelineJob)
                    .where(*guard)
                    .values(
                        status=JobStatus.QUEUED.value,
                        last_error=message,
                        next_run_at=now + timedelta(seconds=delay),
                        started_at=None,
                        updated_at=now
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    logger.info(f"Job {job.id} attempt {job.attempts} already settled")
                    return None
                await db.commit()

                logger.warning(
                    f"⚠️ {job.job_type} job {job.id} attempt {job.attempts}/{job.max_attempts} failed: "
                    f"{message}; retrying in {delay}s"
                )
                self._signal_later(job.job_type, delay)
                return JobStatus.QUEUED.value

            result = await db.execute(
                update(PipelineJob)
                .where(*guard)
                .values(
                    status=JobStatus.FAILED.value,
                    last_error=message,
                    finished_at=now,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.info(f"Job {job.id} attempt {job.attempts} already settled")
                return None

            active_state, failed_state = FAILURE_TRANSITIONS[job.job_type]
            try:
                await self.store.advance_state(db, job.call_session_id, active_state, failed_state)
            except ConflictError:
                logger.warning(
                    f"Session {job.call_session_id} left {active_state} before job {job.id} failed"
                )

            await self.audit.record(
                db,
                restaurant_id=job.restaurant_id,
                actor_id=None,
                action="job_failed",
                entity_type="pipeline_job",
                entity_id=job.id,
                details={
                    "call_session_id": str(job.call_session_id),
                    "job_type": job.job_type,
                    "attempts": job.attempts,
                    "error": message
                }
            )
            await db.commit()

        logger.error(
            f"❌ {job.job_type} job {job.id} failed after {job.attempts} attempts: {message}"
        )
        return JobStatus.FAILED.value

    async def requeue_stale_jobs(self, older_than_seconds: float) -> int:
        """Treat running jobs that started before the cutoff as failed attempts."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)

        async with self.session_factory() as db:
            result = await db.execute(
                select(PipelineJob).where(
                    PipelineJob.status == JobStatus.RUNNING.value,
                    PipelineJob.started_at < cutoff
                )
            )
            stale_jobs = list(result.scalars().all())

        settled = 0
        for job in stale_jobs:
            outcome = await self.fail_job(
                job,
                TimeoutError(f"Worker did not finish within {older_than_seconds:.0f}s")
            )
            if outcome is not None:
                settled += 1

        if settled:
            logger.info(f"🧹 Settled {settled} stale pipeline jobs")
        return settled
