import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.platform.response import api_response

logger = logging.getLogger(__name__)


class AuditEngineError(Exception):
    """Base class for all errors raised by the scan engine."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Scan engine error"

    def __init__(self, message: str = "", **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class ValidationError(AuditEngineError):
    """Bad URL, tier or depth. Rejected before enqueue and never retried."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid scan request"


class SafetyRejection(AuditEngineError):
    """URL points at a disallowed target. Terminal for that URL only."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "URL must be publicly accessible"

    def __init__(self, message: str = "", url: str = "", **context):
        super().__init__(message, url=url, **context)
        self.url = url


class TransientFetchError(AuditEngineError):
    """Timeout, DNS failure or non-2xx response while fetching a page."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Failed to fetch page"

    def __init__(self, message: str = "", url: str = "", status: int = None, **context):
        super().__init__(message, url=url, status=status, **context)
        self.url = url
        self.status = status


class AuditError(AuditEngineError):
    """Unexpected DOM shape inside a rule check."""

    default_message = "Audit rule failed"


class JobInfrastructureError(AuditEngineError):
    """Claim or persistence failure in the work queue store."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Scan infrastructure unavailable"


class JobStateError(AuditEngineError):
    """Transition requested on a job that no longer allows it."""

    status_code = status.HTTP_409_CONFLICT
    default_message = "Job is not in a state that allows this operation"


class JobOwnershipLost(JobStateError):
    """The job was requeued or handed to another worker after this one claimed it."""

    default_message = "Job is no longer held by this worker"


class InvalidTransition(AuditEngineError):
    """Scan state machine asked to move along an edge it does not have."""

    status_code = status.HTTP_409_CONFLICT
    default_message = "Invalid scan state transition"


class NotFoundError(AuditEngineError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


def user_facing_message(exc: BaseException) -> str:
    """Short, human readable error text suitable for storing on a Scan."""
    if isinstance(exc, AuditEngineError):
        return exc.message
    text = str(exc).strip().splitlines()[0] if str(exc).strip() else ""
    name = type(exc).__name__
    if not text:
        return f"Scan failed ({name})"
    return f"Scan failed ({name}): {text[:300]}"


def add_exception_handlers(app):
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return api_response(message=str(exc.detail) or "Error", status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return api_response(
            message="Validation failed",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            data={"errors": exc.errors()},
        )

    @app.exception_handler(AuditEngineError)
    async def audit_engine_exception_handler(request: Request, exc: AuditEngineError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return api_response(message=exc.message, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return api_response(
            message="Internal server error",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
