"""
Error taxonomy for the call conversation pipeline.

Every domain error carries the HTTP status it maps to so that the API layer
can translate it without knowing where it was raised.
"""

from typing import Any, Dict, Optional


class ConversationPipelineError(Exception):
    """Base class for pipeline errors"""

    status_code: int = 500
    default_detail: str = "Internal server error"

    def __init__(self, detail: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        self.detail = detail or self.default_detail
        self.context = context or {}
        super().__init__(self.detail)


class ValidationError(ConversationPipelineError):
    status_code = 400
    default_detail = "Invalid request"


class AuthenticationError(ConversationPipelineError):
    status_code = 401
    default_detail = "Could not validate credentials"


class PermissionDeniedError(ConversationPipelineError):
    status_code = 403
    default_detail = "Access denied"


class NotFoundError(ConversationPipelineError):
    status_code = 404
    default_detail = "Resource not found"


class ConflictError(ConversationPipelineError):
    """A conditional update lost against a concurrent writer."""

    status_code = 409
    default_detail = "Conflict with the current resource state"


class PreconditionError(ConversationPipelineError):
    """The session is not in a state that allows the requested step."""

    status_code = 412
    default_detail = "Precondition failed"


class UpstreamProviderError(ConversationPipelineError):
    """STT or insight provider failed or timed out.

    Recovered by the job orchestrator's retry policy; never returned from an
    enqueue call.
    """

    status_code = 502
    default_detail = "Upstream provider failure"

    def __init__(self, detail: Optional[str] = None, provider: Optional[str] = None, retryable: bool = True):
        super().__init__(detail, {"provider": provider} if provider else None)
        self.provider = provider
        self.retryable = retryable


class InternalError(ConversationPipelineError):
    status_code = 500
    default_detail = "Internal server error"
