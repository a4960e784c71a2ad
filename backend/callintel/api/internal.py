# backend/callintel/api/internal.py
"""
Operator endpoints to (re)start pipeline stages by hand, for instance after a
terminal provider failure.
"""

from fastapi import APIRouter, Depends, status
from typing import Optional
from uuid import UUID
import logging

from callintel.auth.auth import require_operator
from callintel.schemas.schemas import CallerContext, TranscribeRequest, JobAcceptedResponse
from callintel.services.pipeline import ConversationPipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal/conversations", tags=["pipeline-operations"])


async def _accepted(pipeline: ConversationPipeline, job_id: UUID, session_id: UUID,
                    restaurant_id: str) -> JobAcceptedResponse:
    job = await pipeline.orchestrator.get_job(job_id)
    details = await pipeline.queries.get_session_details(session_id, restaurant_id)
    return JobAcceptedResponse(
        job_id=job_id,
        call_session_id=session_id,
        job_type=job.job_type,
        job_status=job.status,
        session_status=details.session.status
    )


@router.post("/{session_id}/transcribe", response_model=JobAcceptedResponse,
             status_code=status.HTTP_202_ACCEPTED)
async def enqueue_transcription(
    session_id: UUID,
    body: Optional[TranscribeRequest] = None,
    caller: CallerContext = Depends(require_operator),
    pipeline: ConversationPipeline = Depends(get_pipeline)
):
    """Queue transcription for a call session."""
    job_id = await pipeline.orchestrator.enqueue_transcription(
        session_id,
        caller.restaurant_id,
        audio_url=body.audio_url if body else None,
        actor_id=caller.user_id
    )
    logger.info(f"Operator {caller.user_id} queued transcription for session {session_id}")
    return await _accepted(pipeline, job_id, session_id, caller.restaurant_id)


@router.post("/{session_id}/analyze", response_model=JobAcceptedResponse,
             status_code=status.HTTP_202_ACCEPTED)
async def enqueue_analysis(
    session_id: UUID,
    caller: CallerContext = Depends(require_operator),
    pipeline: ConversationPipeline = Depends(get_pipeline)
):
    """Queue insight extraction for a call session with a ready transcript."""
    job_id = await pipeline.orchestrator.enqueue_analysis(
        session_id,
        caller.restaurant_id,
        actor_id=caller.user_id
    )
    logger.info(f"Operator {caller.user_id} queued analysis for session {session_id}")
    return await _accepted(pipeline, job_id, session_id, caller.restaurant_id)
