from .models import (
    Base,
    CallSession,
    CallTranscript,
    CallInsights,
    CallReview,
    PipelineJob,
    AuditLog,
    CallSessionStatus,
    CallDirection,
    JobType,
    JobStatus,
    ACTIVE_JOB_STATUSES,
)

__all__ = [
    "Base",
    "CallSession",
    "CallTranscript",
    "CallInsights",
    "CallReview",
    "PipelineJob",
    "AuditLog",
    "CallSessionStatus",
    "CallDirection",
    "JobType",
    "JobStatus",
    "ACTIVE_JOB_STATUSES",
]
