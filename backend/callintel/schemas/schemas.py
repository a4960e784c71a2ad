# backend/callintel/schemas/schemas.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any, Union
from datetime import datetime
from uuid import UUID

from callintel.models.models import CallDirection
from callintel.security.pii import mask_phone_number


# Auth Schemas
class TokenPayload(BaseModel):
    sub: str
    restaurant_id: Optional[str] = None
    role: str = "user"
    exp: Optional[datetime] = None


class CallerContext(BaseModel):
    user_id: str
    restaurant_id: str
    role: str


# Transcript Schemas
class TranscriptTurn(BaseModel):
    speaker: str = "unknown"
    start: Optional[float] = None
    end: Optional[float] = None
    text: str


class SttResult(BaseModel):
    """What a speech-to-text provider hands back for one recording."""
    text: str
    turns: List[TranscriptTurn] = Field(default_factory=list)
    language: str = "en"
    confidence: Optional[float] = None


class AnalysisResult(BaseModel):
    """Normalized insight-extraction output, ready to persist."""
    summary: Optional[str] = None
    intent_primary: str = "other"
    intents_secondary: List[str] = Field(default_factory=list)
    outcome: str = "unresolved"
    sentiment: str = "neutral"
    friction_points: List[Dict[str, Any]] = Field(default_factory=list)
    improvement_suggestions: List[Dict[str, Any]] = Field(default_factory=list)
    extracted_entities: Dict[str, Any] = Field(default_factory=dict)
    quality_score: Optional[int] = Field(None, ge=0, le=100)
    raw: Optional[str] = None


# Webhook Schemas
class CallWebhookPayload(BaseModel):
    restaurant_id: str = Field(..., min_length=1, max_length=64)
    provider: str = Field("vapi", min_length=1, max_length=32)
    provider_call_id: str = Field(..., min_length=1, max_length=128)
    direction: CallDirection = CallDirection.INBOUND
    from_number: Optional[str] = Field(None, max_length=32)
    to_number: Optional[str] = Field(None, max_length=32)
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = Field(None, ge=0)
    audio_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Plain text, a list of {role, content} messages, or {"turns": [...]}
    transcript: Optional[Union[str, List[Dict[str, Any]], Dict[str, Any]]] = None


class WebhookAcceptedResponse(BaseModel):
    call_session_id: UUID
    status: str
    created: bool
    from_number: Optional[str] = None
    job_id: Optional[UUID] = None


# Call Session Schemas
class CallSessionResponse(BaseModel):
    id: UUID
    restaurant_id: str
    provider: str
    provider_call_id: str
    direction: str
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    status: str
    audio_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def session_fields(cls, session) -> Dict[str, Any]:
        return dict(
            id=session.id,
            restaurant_id=session.restaurant_id,
            provider=session.provider,
            provider_call_id=session.provider_call_id,
            direction=session.direction,
            from_number=mask_phone_number(session.from_number),
            to_number=session.to_number,
            started_at=session.started_at,
            ended_at=session.ended_at,
            duration_seconds=session.duration_seconds,
            status=session.status,
            audio_url=session.audio_url,
            metadata=session.call_metadata or {},
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    @classmethod
    def from_model(cls, session) -> "CallSessionResponse":
        return cls(**cls.session_fields(session))


class InsightSnippet(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    summary: Optional[str] = None
    intent_primary: Optional[str] = None
    outcome: Optional[str] = None
    sentiment: Optional[str] = None
    quality_score: Optional[int] = None


class ReviewSnippet(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    reviewed_at: datetime


class CallSessionListItem(CallSessionResponse):
    insights: Optional[InsightSnippet] = None
    review: Optional[ReviewSnippet] = None

    @classmethod
    def from_row(cls, session, insights=None, review=None) -> "CallSessionListItem":
        return cls(
            **cls.session_fields(session),
            insights=InsightSnippet.model_validate(insights) if insights is not None else None,
            review=ReviewSnippet.model_validate(review) if review is not None else None,
        )


class CallSessionListResponse(BaseModel):
    sessions: List[CallSessionListItem]
    total: int
    limit: int
    offset: int


class TranscriptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    call_session_id: UUID
    transcript_text: str
    transcript_json: Dict[str, Any]
    language: str
    stt_provider: str
    stt_confidence: Optional[float] = None
    created_at: datetime


class InsightsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    call_session_id: UUID
    summary: Optional[str] = None
    intent_primary: Optional[str] = None
    intents_secondary: List[str] = Field(default_factory=list)
    outcome: Optional[str] = None
    sentiment: Optional[str] = None
    friction_points: List[Dict[str, Any]] = Field(default_factory=list)
    improvement_suggestions: List[Dict[str, Any]] = Field(default_factory=list)
    extracted_entities: Dict[str, Any] = Field(default_factory=dict)
    quality_score: Optional[int] = None
    created_at: datetime


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    call_session_id: UUID
    reviewed_by: str
    reviewed_at: datetime
    internal_notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    follow_up_action: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CallSessionDetailsResponse(BaseModel):
    session: CallSessionResponse
    transcript: Optional[TranscriptResponse] = None
    insights: Optional[InsightsResponse] = None
    review: Optional[ReviewResponse] = None


# Query Schemas
class SessionFilters(BaseModel):
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    intent: Optional[str] = None
    outcome: Optional[str] = None
    sentiment: Optional[str] = None
    duration_min: Optional[int] = None
    duration_max: Optional[int] = None
    reviewed: Optional[bool] = None
    search: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None


# Analytics Schemas
class DurationPercentiles(BaseModel):
    p50: Optional[float] = None
    p90: Optional[float] = None
    p95: Optional[float] = None


class IntentCount(BaseModel):
    intent: str
    count: int


class AnalyticsSummaryResponse(BaseModel):
    total_calls: int
    completed_calls: int
    abandoned_calls: int
    average_duration: float
    duration_percentiles: DurationPercentiles
    outcome_breakdown: Dict[str, int]
    sentiment_breakdown: Dict[str, int]
    intent_breakdown: Dict[str, int]
    top_intents: List[IntentCount]
    status_breakdown: Dict[str, int]
    average_quality_score: Optional[float] = None
    reviewed_calls: int
    review_coverage: float
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


# Review / Pipeline Request Schemas
class ReviewCreate(BaseModel):
    internal_notes: Optional[str] = Field(None, max_length=10000)
    tags: List[str] = Field(default_factory=list)
    follow_up_action: Optional[str] = Field(None, max_length=2000)


class TranscribeRequest(BaseModel):
    audio_url: Optional[str] = None


class JobAcceptedResponse(BaseModel):
    job_id: UUID
    call_session_id: UUID
    job_type: str
    job_status: str
    session_status: str
