"""
Global Exception Handling

Provides the error taxonomy for batch compositing and structured
JSON error responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, session_id_var

logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class CompositorBaseException(Exception):
    """Base exception for the batch compositor."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        session_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.session_id = session_id or session_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(CompositorBaseException):
    """Raised when a submission is missing or malformed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class ConfigurationError(CompositorBaseException):
    """Raised when a required setting (e.g. API key) is missing."""

    def __init__(self, message: str, setting: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        if setting:
            self.details["setting"] = setting


class RemoteServiceError(CompositorBaseException):
    """
    Raised when the remote compositing call fails.

    The retryable flag is decided once, where the response is inspected,
    and never re-interpreted downstream.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        service: str = "compositing",
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=502, **kwargs)
        self.http_status = http_status
        self.details["service"] = service
        self.details["http_status"] = http_status
        self.details["retryable"] = self.retryable


class TransientRemoteError(RemoteServiceError):
    """Network failure, timeout, rate limit (429) or server fault (5xx)."""

    retryable = True


class PermanentRemoteError(RemoteServiceError):
    """Any other rejection from the remote service (4xx, auth, malformed)."""

    retryable = False


class LocalIOError(CompositorBaseException):
    """Raised when fitting, reading or persisting an image fails locally."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        if path:
            self.details["path"] = path


class ResourceMissingError(CompositorBaseException):
    """Raised when session state or storage no longer exists."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=404, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(CompositorBaseException)
    async def compositor_exception_handler(request: Request, exc: CompositorBaseException):
        logger.warning(
            "compositor_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            path=str(request.url.path),
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "session_id": exc.session_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": _utc_timestamp()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "session_id": session_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )
