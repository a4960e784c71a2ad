# backend/callintel/api/webhooks.py
"""
Inbound webhook for completed calls from the voice-AI provider
"""

from fastapi import APIRouter, Depends, Header, HTTPException, status
from typing import Optional
import hmac
import logging

from callintel.schemas.schemas import CallWebhookPayload, WebhookAcceptedResponse
from callintel.security.pii import mask_phone_number
from callintel.services.pipeline import ConversationPipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None),
    pipeline: ConversationPipeline = Depends(get_pipeline)
) -> None:
    expected = pipeline.settings.WEBHOOK_SECRET
    if not expected:
        logger.error("❌ WEBHOOK_SECRET is not configured; rejecting webhook delivery")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        logger.warning("⚠️ Webhook delivery with invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


@router.post("/calls", response_model=WebhookAcceptedResponse,
             dependencies=[Depends(verify_webhook_secret)])
async def receive_call(
    payload: CallWebhookPayload,
    pipeline: ConversationPipeline = Depends(get_pipeline)
):
    """Record a call session and start transcription/analysis."""
    result = await pipeline.ingestion.ingest_call(payload)
    logger.info(
        f"📞 Webhook call {payload.provider_call_id} from {mask_phone_number(payload.from_number)} "
        f"-> session {result.session.id} ({result.session.status})"
    )
    return WebhookAcceptedResponse(
        call_session_id=result.session.id,
        status=result.session.status,
        created=result.created,
        from_number=mask_phone_number(result.session.from_number),
        job_id=result.job_id
    )
