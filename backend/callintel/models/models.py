# backend/callintel/models/models.py
from sqlalchemy import Column, String, Integer, Float, DateTime, ForeignKey, UniqueConstraint, Text, Index, Uuid, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import uuid
import enum
from typing import Optional

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CallSessionStatus(str, enum.Enum):
    RECEIVED = "received"
    TRANSCRIPT_PENDING = "transcript_pending"
    TRANSCRIPT_READY = "transcript_ready"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    TRANSCRIPT_FAILED = "transcript_failed"
    ANALYSIS_FAILED = "analysis_failed"


class CallDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class JobType(str, enum.Enum):
    TRANSCRIPTION = "transcription"
    ANALYSIS = "analysis"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class CallSession(Base):
    __tablename__ = "call_sessions"
    __table_args__ = (
        UniqueConstraint("provider", "provider_call_id", name="uq_call_sessions_provider_call"),
        Index("ix_call_sessions_restaurant_started", "restaurant_id", "started_at"),
        Index("ix_call_sessions_restaurant_status", "restaurant_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id = Column(String(64), nullable=False)  # Tenant

    # Call identification
    provider = Column(String(32), nullable=False, default="vapi")
    provider_call_id = Column(String(128), nullable=False)

    # Call details, from_number is the caller and is masked on every read path
    direction = Column(String(16), nullable=False, default=CallDirection.INBOUND.value)
    from_number = Column(String(32), nullable=True)
    to_number = Column(String(32), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    status = Column(String(32), nullable=False, default=CallSessionStatus.RECEIVED.value)
    audio_url = Column(Text, nullable=True)
    call_metadata = Column("metadata", JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class CallTranscript(Base):
    __tablename__ = "call_transcripts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    call_session_id = Column(Uuid, ForeignKey("call_sessions.id", ondelete="CASCADE"), nullable=False, unique=True)

    transcript_text = Column(Text, nullable=False)
    # {"turns": [{"speaker": ..., "start": ..., "end": ..., "text": ...}]}
    transcript_json = Column(JSONType, nullable=False, default=lambda: {"turns": []})
    language = Column(String(16), nullable=False, default="en")
    stt_provider = Column(String(32), nullable=False, default="deepgram")
    stt_confidence = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class CallInsights(Base):
    __tablename__ = "call_insights"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    call_session_id = Column(Uuid, ForeignKey("call_sessions.id", ondelete="CASCADE"), nullable=False, unique=True)

    summary = Column(Text, nullable=True)
    intent_primary = Column(String(64), nullable=True)
    intents_secondary = Column(JSONType, nullable=False, default=list)
    outcome = Column(String(32), nullable=True)
    sentiment = Column(String(32), nullable=True)
    friction_points = Column(JSONType, nullable=False, default=list)
    improvement_suggestions = Column(JSONType, nullable=False, default=list)
    extracted_entities = Column(JSONType, nullable=False, default=dict)
    quality_score = Column(Integer, nullable=True)
    analysis_raw = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_call_insights_intent", "intent_primary"),
        Index("ix_call_insights_outcome", "outcome"),
        Index("ix_call_insights_sentiment", "sentiment"),
    )


class CallReview(Base):
    """Human-authored annotation, never written by the pipeline."""
    __tablename__ = "call_reviews"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    call_session_id = Column(Uuid, ForeignKey("call_sessions.id", ondelete="CASCADE"), nullable=False, unique=True)

    reviewed_by = Column(String(64), nullable=False)
    reviewed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    internal_notes = Column(Text, nullable=True)
    tags = Column(JSONType, nullable=False, default=list)
    follow_up_action = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class PipelineJob(Base):
    __tablename__ = "pipeline_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_type = Column(String(32), nullable=False)
    call_session_id = Column(Uuid, ForeignKey("call_sessions.id", ondelete="CASCADE"), nullable=False)
    restaurant_id = Column(String(64), nullable=False)

    status = Column(String(16), nullable=False, default=JobStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    payload = Column(JSONType, nullable=False, default=dict)

    next_run_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


# One queued/running job per session and type
Index(
    "uq_pipeline_jobs_active",
    PipelineJob.call_session_id,
    PipelineJob.job_type,
    unique=True,
    postgresql_where=PipelineJob.status.in_(ACTIVE_JOB_STATUSES),
    sqlite_where=PipelineJob.status.in_(ACTIVE_JOB_STATUSES),
)
Index("ix_pipeline_jobs_claim", PipelineJob.job_type, PipelineJob.status, PipelineJob.next_run_at)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id = Column(String(64), nullable=False)
    actor_id = Column(String(64), nullable=True)  # None for pipeline/system actions
    action = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=False)
    details = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_restaurant_created", "restaurant_id", "created_at"),
    )
