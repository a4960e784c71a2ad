# backend/callintel/api/conversations.py
"""
Conversation intelligence endpoints: call session listing, details, analytics
and human review. Tenant and user always come from the bearer token.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional
from uuid import UUID
from datetime import datetime
import logging

from callintel.auth.auth import get_caller_context, require_user
from callintel.schemas.schemas import (
    CallerContext,
    SessionFilters,
    CallSessionListResponse,
    CallSessionDetailsResponse,
    AnalyticsSummaryResponse,
    ReviewCreate,
    ReviewResponse,
)
from callintel.services.pipeline import ConversationPipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=CallSessionListResponse)
async def list_conversations(
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    intent: Optional[str] = Query(None),
    outcome: Optional[str] = Query(None),
    sentiment: Optional[str] = Query(None),
    duration_min: Optional[int] = Query(None, alias="durationMin"),
    duration_max: Optional[int] = Query(None, alias="durationMax"),
    reviewed: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    limit: Optional[int] = Query(None),
    offset: Optional[int] = Query(None),
    caller: CallerContext = Depends(get_caller_context),
    pipeline: ConversationPipeline = Depends(get_pipeline)
):
    """List call sessions for the caller's restaurant."""
    filters = SessionFilters(
        date_from=date_from,
        date_to=date_to,
        intent=intent,
        outcome=outcome,
        sentiment=sentiment,
        duration_min=duration_min,
        duration_max=duration_max,
        reviewed=reviewed,
        search=search,
        limit=limit,
        offset=offset
    )
    return await pipeline.queries.list_sessions(caller.restaurant_id, filters)


# Declared before /{session_id} so "analytics" is not parsed as an id
@router.get("/analytics/summary", response_model=AnalyticsSummaryResponse)
async def get_analytics_summary(
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    caller: CallerContext = Depends(get_caller_context),
    pipeline: ConversationPipeline = Depends(get_pipeline)
):
    """Aggregate call statistics for the caller's restaurant."""
    return await pipeline.queries.get_analytics_summary(caller.restaurant_id, date_from, date_to)


@router.get("/{session_id}", response_model=CallSessionDetailsResponse)
async def get_conversation(
    session_id: UUID,
    caller: CallerContext = Depends(get_caller_context),
    pipeline: ConversationPipeline = Depends(get_pipeline)
):
    """Get a call session with its transcript, insights and review."""
    return await pipeline.queries.get_session_details(session_id, caller.restaurant_id)


@router.post("/{session_id}/review", response_model=ReviewResponse)
async def review_conversation(
    session_id: UUID,
    review: ReviewCreate,
    caller: CallerContext = Depends(require_user),
    pipeline: ConversationPipeline = Depends(get_pipeline)
):
    """Create or replace the human review of a call session."""
    saved = await pipeline.reviews.add_review(
        restaurant_id=caller.restaurant_id,
        call_session_id=session_id,
        reviewed_by=caller.user_id,
        internal_notes=review.internal_notes,
        tags=review.tags,
        follow_up_action=review.follow_up_action
    )
    return ReviewResponse.model_validate(saved)
