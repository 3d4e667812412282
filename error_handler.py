"""Error taxonomy for the analytics engine and its HTTP error responses."""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AnalyticsError(Exception):
    """
    Base error raised by the analytics components.

    Carries a stable error code and the HTTP status the hosting layer
    should answer with.
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error into the response envelope."""
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


class InvalidArgumentError(AnalyticsError):
    """Malformed filter, id format, enum value or range. Raised before any computation."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(AnalyticsError):
    """Referenced device does not exist."""

    code = "DEVICE_NOT_FOUND"
    status_code = 404

    @classmethod
    def device(cls, device_id: str) -> "NotFoundError":
        return cls(f"Device with ID '{device_id}' not found", {"device_id": device_id})


class UpstreamUnavailableError(AnalyticsError):
    """The telemetry store failed to answer. Propagated unchanged, never retried here."""

    code = "DATABASE_ERROR"
    status_code = 503


async def analytics_error_handler(request: Request, exc: AnalyticsError) -> JSONResponse:
    """Render an AnalyticsError as a JSON error envelope."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}", exc_info=exc)
    else:
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Map FastAPI query/path validation failures onto the 400 envelope."""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    error = InvalidArgumentError(
        ", ".join(e["message"] for e in errors) or "Invalid request",
        {"errors": errors},
    )
    return await analytics_error_handler(request, error)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the analytics error handlers on a FastAPI app."""
    app.add_exception_handler(AnalyticsError, analytics_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
