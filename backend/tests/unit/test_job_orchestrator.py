import asyncio
import uuid
import pytest
from datetime import timedelta
from sqlalchemy import select, update, func

from callintel.core.exceptions import (
    ConflictError, NotFoundError, PreconditionError, ValidationError, UpstreamProviderError
)
from callintel.models.models import (
    AuditLog, CallSession, CallSessionStatus, CallTranscript, CallInsights,
    JobStatus, JobType, PipelineJob, utcnow
)

S = CallSessionStatus


async def _status(session_factory, session_id):
    async with session_factory() as db:
        return await db.scalar(select(CallSession.status).where(CallSession.id == session_id))


async def _jobs(session_factory, session_id, job_type=None):
    async with session_factory() as db:
        stmt = select(PipelineJob).where(PipelineJob.call_session_id == session_id)
        if job_type:
            stmt = stmt.where(PipelineJob.job_type == job_type)
        return list((await db.execute(stmt)).scalars().all())


class TestEnqueueTranscription:

    @pytest.mark.asyncio
    async def test_creates_job_and_moves_to_pending(self, pipeline, session_factory, make_call_session):
        call = await make_call_session()

        job_id = await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        jobs = await _jobs(session_factory, call.id)
        assert [job.id for job in jobs] == [job_id]
        assert jobs[0].job_type == JobType.TRANSCRIPTION.value
        assert jobs[0].status == JobStatus.QUEUED.value
        assert jobs[0].payload == {"audio_url": call.audio_url}
        assert jobs[0].max_attempts == 3
        assert await _status(session_factory, call.id) == S.TRANSCRIPT_PENDING.value

    @pytest.mark.asyncio
    async def test_is_idempotent_while_active(self, pipeline, session_factory, make_call_session):
        call = await make_call_session()

        first = await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        second = await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        assert first == second
        assert len(await _jobs(session_factory, call.id)) == 1

    @pytest.mark.asyncio
    async def test_argument_audio_url_overrides_stored(self, pipeline, session_factory, make_call_session):
        call = await make_call_session(audio_url=None)

        await pipeline.orchestrator.enqueue_transcription(
            call.id, "rest-1", audio_url="https://cdn.example.com/other.mp3"
        )

        jobs = await _jobs(session_factory, call.id)
        assert jobs[0].payload["audio_url"] == "https://cdn.example.com/other.mp3"

    @pytest.mark.asyncio
    async def test_without_audio_is_validation_error(self, pipeline, session_factory, make_call_session):
        call = await make_call_session(audio_url=None)

        with pytest.raises(ValidationError):
            await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        assert await _jobs(session_factory, call.id) == []
        assert await _status(session_factory, call.id) == S.RECEIVED.value

    @pytest.mark.asyncio
    async def test_other_tenant_is_not_found(self, pipeline, make_call_session):
        call = await make_call_session(restaurant_id="rest-1")

        with pytest.raises(NotFoundError):
            await pipeline.orchestrator.enqueue_transcription(call.id, "rest-2")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        S.TRANSCRIPT_READY.value, S.ANALYZING.value, S.COMPLETED.value, S.ANALYSIS_FAILED.value
    ])
    async def test_rejected_after_transcription(self, pipeline, make_call_session, status):
        call = await make_call_session(status=status)

        with pytest.raises(PreconditionError):
            await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

    @pytest.mark.asyncio
    async def test_retry_from_failed(self, pipeline, session_factory, make_call_session):
        call = await make_call_session(status=S.TRANSCRIPT_FAILED.value)

        job_id = await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1", actor_id="ops-1")

        assert job_id is not None
        assert await _status(session_factory, call.id) == S.TRANSCRIPT_PENDING.value

        async with session_factory() as db:
            entry = (await db.execute(
                select(AuditLog).where(AuditLog.action == "transcription_enqueued")
            )).scalar_one()
        assert entry.actor_id == "ops-1"
        assert entry.details["previous_status"] == S.TRANSCRIPT_FAILED.value

    @pytest.mark.asyncio
    async def test_pending_session_without_job_gets_new_job(self, pipeline, session_factory, make_call_session):
        call = await make_call_session(status=S.TRANSCRIPT_PENDING.value)

        job_id = await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        assert [job.id for job in await _jobs(session_factory, call.id)] == [job_id]
        assert await _status(session_factory, call.id) == S.TRANSCRIPT_PENDING.value

    @pytest.mark.asyncio
    async def test_concurrent_enqueue_yields_one_job(self, pipeline, session_factory, make_call_session):
        call = await make_call_session()

        results = await asyncio.gather(
            pipeline.orchestrator.enqueue_transcription(call.id, "rest-1"),
            pipeline.orchestrator.enqueue_transcription(call.id, "rest-1"),
            return_exceptions=True
        )

        job_ids = {result for result in results if isinstance(result, uuid.UUID)}
        assert len(job_ids) == 1
        assert len(await _jobs(session_factory, call.id)) == 1


class TestEnqueueAnalysis:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [S.RECEIVED.value, S.TRANSCRIPT_PENDING.value])
    async def test_requires_transcript_ready(self, pipeline, session_factory, make_call_session, status):
        call = await make_call_session(status=status)

        with pytest.raises(PreconditionError):
            await pipeline.orchestrator.enqueue_analysis(call.id, "rest-1")

        assert await _jobs(session_factory, call.id) == []
        assert await _status(session_factory, call.id) == status

    @pytest.mark.asyncio
    async def test_requires_stored_transcript(self, pipeline, make_call_session):
        call = await make_call_session(status=S.TRANSCRIPT_READY.value)

        with pytest.raises(PreconditionError):
            await pipeline.orchestrator.enqueue_analysis(call.id, "rest-1")

    @pytest.mark.asyncio
    async def test_moves_to_analyzing(self, pipeline, session_factory, make_call_session):
        call = await make_call_session(status=S.TRANSCRIPT_READY.value)
        async with session_factory() as db:
            db.add(CallTranscript(call_session_id=call.id, transcript_text="hello"))
            await db.commit()

        job_id = await pipeline.orchestrator.enqueue_analysis(call.id, "rest-1")
        again = await pipeline.orchestrator.enqueue_analysis(call.id, "rest-1")

        assert job_id == again
        assert await _status(session_factory, call.id) == S.ANALYZING.value
        assert len(await _jobs(session_factory, call.id, JobType.ANALYSIS.value)) == 1


class TestClaim:

    @pytest.mark.asyncio
    async def test_claim_marks_running_and_counts_attempt(self, pipeline, make_call_session):
        call = await make_call_session()
        job_id = await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)

        assert job.id == job_id
        assert job.status == JobStatus.RUNNING.value
        assert job.attempts == 1
        assert job.started_at is not None
        assert await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION) is None

    @pytest.mark.asyncio
    async def test_claim_skips_jobs_not_yet_due(self, pipeline, session_factory, make_call_session):
        call = await make_call_session()
        job_id = await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        async with session_factory() as db:
            await db.execute(
                update(PipelineJob)
                .where(PipelineJob.id == job_id)
                .values(next_run_at=utcnow() + timedelta(minutes=5))
            )
            await db.commit()

        assert await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION) is None

    @pytest.mark.asyncio
    async def test_claim_only_matching_type(self, pipeline, make_call_session):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        assert await pipeline.orchestrator.claim_next(JobType.ANALYSIS) is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_a_job(self, pipeline, make_call_session):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        claims = await asyncio.gather(
            pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION),
            pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION),
            return_exceptions=True
        )

        claimed = [claim for claim in claims if isinstance(claim, PipelineJob)]
        assert len(claimed) == 1


class TestCompletionAndFailure:

    @pytest.mark.asyncio
    async def test_complete_transcription_commits_and_auto_analyzes(
        self, pipeline, session_factory, make_call_session, fake_stt
    ):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)

        await pipeline.orchestrator.complete_transcription(job, fake_stt.result)

        jobs = {j.job_type: j for j in await _jobs(session_factory, call.id)}
        assert jobs[JobType.TRANSCRIPTION.value].status == JobStatus.SUCCEEDED.value
        assert jobs[JobType.ANALYSIS.value].status == JobStatus.QUEUED.value
        assert await _status(session_factory, call.id) == S.ANALYZING.value

    @pytest.mark.asyncio
    async def test_complete_without_auto_analyze_stops_at_ready(
        self, pipeline, session_factory, make_call_session, fake_stt
    ):
        pipeline.orchestrator.settings.AUTO_ANALYZE = False
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)

        await pipeline.orchestrator.complete_transcription(job, fake_stt.result)

        assert await _status(session_factory, call.id) == S.TRANSCRIPT_READY.value
        assert await _jobs(session_factory, call.id, JobType.ANALYSIS.value) == []

    @pytest.mark.asyncio
    async def test_completion_is_all_or_nothing(self, pipeline, session_factory, make_call_session, fake_analyzer):
        call = await make_call_session(status=S.TRANSCRIPT_READY.value)
        async with session_factory() as db:
            db.add(CallTranscript(call_session_id=call.id, transcript_text="hello"))
            await db.commit()
        await pipeline.orchestrator.enqueue_analysis(call.id, "rest-1")
        job = await pipeline.orchestrator.claim_next(JobType.ANALYSIS)

        # Session moved on behind the worker's back
        async with session_factory() as db:
            await db.execute(
                update(CallSession).where(CallSession.id == call.id).values(status=S.ANALYSIS_FAILED.value)
            )
            await db.commit()

        with pytest.raises(ConflictError):
            await pipeline.orchestrator.complete_analysis(job, fake_analyzer.result)

        async with session_factory() as db:
            insights = await db.scalar(select(func.count(CallInsights.id)))
            job_status = await db.scalar(select(PipelineJob.status).where(PipelineJob.id == job.id))
        assert insights == 0
        assert job_status == JobStatus.RUNNING.value

    @pytest.mark.asyncio
    async def test_fail_job_requeues_with_backoff(self, pipeline, session_factory, make_call_session):
        pipeline.orchestrator.settings.JOB_RETRY_BACKOFF_SECONDS = [60.0, 120.0, 300.0]
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)

        outcome = await pipeline.orchestrator.fail_job(job, UpstreamProviderError("boom"))

        assert outcome == JobStatus.QUEUED.value
        [stored] = await _jobs(session_factory, call.id)
        assert stored.status == JobStatus.QUEUED.value
        assert stored.last_error == "boom"
        assert stored.attempts == 1
        # Backoff keeps it out of reach for now
        assert await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION) is None
        assert await _status(session_factory, call.id) == S.TRANSCRIPT_PENDING.value

    @pytest.mark.asyncio
    async def test_fail_job_terminal_after_max_attempts(self, pipeline, session_factory, make_call_session):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        outcomes = []
        for _ in range(3):
            job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)
            outcomes.append(await pipeline.orchestrator.fail_job(job, UpstreamProviderError("timeout")))

        assert outcomes == [JobStatus.QUEUED.value, JobStatus.QUEUED.value, JobStatus.FAILED.value]
        [stored] = await _jobs(session_factory, call.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.attempts == 3
        assert stored.finished_at is not None
        assert await _status(session_factory, call.id) == S.TRANSCRIPT_FAILED.value

        async with session_factory() as db:
            entry = (await db.execute(
                select(AuditLog).where(AuditLog.action == "job_failed")
            )).scalar_one()
        assert entry.entity_id == str(stored.id)
        assert entry.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_on_first_attempt(self, pipeline, session_factory, make_call_session):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)

        outcome = await pipeline.orchestrator.fail_job(
            job, UpstreamProviderError("Transcript is empty", retryable=False)
        )

        assert outcome == JobStatus.FAILED.value
        [stored] = await _jobs(session_factory, call.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.attempts == 1
        assert stored.last_error == "Transcript is empty"
        assert await _status(session_factory, call.id) == S.TRANSCRIPT_FAILED.value
        assert await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        PreconditionError("Transcription job has no audio URL"),
        ValidationError("bad payload"),
    ])
    async def test_precondition_and_validation_errors_are_terminal(
        self, pipeline, session_factory, make_call_session, error
    ):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)

        assert await pipeline.orchestrator.fail_job(job, error) == JobStatus.FAILED.value
        assert await _status(session_factory, call.id) == S.TRANSCRIPT_FAILED.value

    @pytest.mark.asyncio
    async def test_fail_job_ignores_already_settled_attempt(self, pipeline, make_call_session):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)

        assert await pipeline.orchestrator.fail_job(job, RuntimeError("first")) == JobStatus.QUEUED.value
        assert await pipeline.orchestrator.fail_job(job, RuntimeError("second")) is None

    @pytest.mark.asyncio
    async def test_requeue_stale_jobs(self, pipeline, session_factory, make_call_session):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        job = await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)
        async with session_factory() as db:
            await db.execute(
                update(PipelineJob)
                .where(PipelineJob.id == job.id)
                .values(started_at=utcnow() - timedelta(minutes=30))
            )
            await db.commit()

        settled = await pipeline.orchestrator.requeue_stale_jobs(older_than_seconds=300)

        assert settled == 1
        [stored] = await _jobs(session_factory, call.id)
        assert stored.status == JobStatus.QUEUED.value
        assert "did not finish" in stored.last_error

    @pytest.mark.asyncio
    async def test_requeue_leaves_fresh_running_jobs(self, pipeline, make_call_session):
        call = await make_call_session()
        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")
        await pipeline.orchestrator.claim_next(JobType.TRANSCRIPTION)

        assert await pipeline.orchestrator.requeue_stale_jobs(older_than_seconds=300) == 0

    @pytest.mark.asyncio
    async def test_enqueue_signals_worker_wakeup(self, pipeline, make_call_session):
        event = asyncio.Event()
        pipeline.orchestrator.register_wakeup(JobType.TRANSCRIPTION, event)
        call = await make_call_session()

        await pipeline.orchestrator.enqueue_transcription(call.id, "rest-1")

        assert event.is_set()
