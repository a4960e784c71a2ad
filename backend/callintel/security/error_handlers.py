"""
Error Handlers

Translates the pipeline error taxonomy into HTTP responses and keeps
unexpected failures from leaking internals to API clients.
"""

import logging
import traceback
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from callintel.core.exceptions import ConversationPipelineError, UpstreamProviderError

logger = logging.getLogger(__name__)


class PipelineErrorHandler:
    """Maps exceptions raised while serving a request to JSON responses"""

    def __init__(self, debug_mode: bool = False):
        """
        Initialize error handler

        Args:
            debug_mode: Whether to include error type names (dev only)
        """
        self.debug_mode = debug_mode

    async def handle_pipeline_error(self, request: Request, exc: ConversationPipelineError) -> JSONResponse:
        """Handle domain errors with their own status code and message"""
        status_code = exc.status_code

        if isinstance(exc, UpstreamProviderError):
            # Provider failures are retried by the job orchestrator; one reaching a
            # request handler means a synchronous path called a provider directly
            logger.error(
                f"Upstream provider error on {request.method} {request.url.path}: {exc.detail}"
            )
        elif status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.detail}")
        else:
            logger.info(
                f"HTTP {status_code} {type(exc).__name__}: {request.method} {request.url.path} - {exc.detail}"
            )

        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.detail, "status_code": status_code}
        )

    async def handle_http_exception(self, request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle framework HTTP exceptions (unknown routes, wrong methods)"""
        logger.warning(
            f"HTTP {exc.status_code} error: {request.method} {request.url.path} - {exc.detail}"
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "status_code": exc.status_code},
            headers=getattr(exc, "headers", None)
        )

    async def handle_validation_error(self, request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle malformed request bodies and query strings"""
        logger.warning(
            f"Validation error: {request.method} {request.url.path} - {len(exc.errors())} errors"
        )

        safe_errors = [
            {
                "field": ".".join(str(loc) for loc in error.get("loc", [])),
                "message": error.get("msg", "Invalid value")
            }
            for error in exc.errors()[:10]  # Limit to 10 errors
        ]

        return JSONResponse(
            status_code=422,
            content={"detail": "Invalid request data", "errors": safe_errors}
        )

    async def handle_internal_error(self, request: Request, exc: Exception) -> JSONResponse:
        """Handle anything unexpected without exposing details"""
        logger.error(
            f"Internal server error: {request.method} {request.url.path} - "
            f"{type(exc).__name__}: {str(exc)}"
        )
        logger.error(f"Traceback: {traceback.format_exc()}")

        response_data = {
            "detail": "Internal server error",
            "status_code": 500
        }
        if self.debug_mode:
            response_data["error_type"] = type(exc).__name__

        return JSONResponse(status_code=500, content=response_data)


# Global error handler instance
error_handler = PipelineErrorHandler(debug_mode=False)
