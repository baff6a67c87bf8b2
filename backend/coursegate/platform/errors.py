"""
Error taxonomy for the billing and entitlement engine.

Business-rule violations (overlap, inactive plan, immutable-field edit) are
raised as AppError subclasses with human-readable messages and reach the
caller as-is. Anything else is an infrastructure failure: it is logged in
full server-side and the caller only sees a generic message plus a
correlation id. Stack traces are NEVER returned to clients.

Standard HTTP status codes:
- 400: ValidationError, SignatureError
- 401: AuthenticationError
- 403: PermissionDeniedError
- 404: NotFoundError
- 409: OverlapError, ConflictError
- 502: GatewayError
- 503: ServiceUnavailableError
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import Request, HTTPException, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error with a consistent response shape."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Missing/invalid plan or malformed request (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class AuthenticationError(AppError):
    """Authentication failure (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            code="AUTHENTICATION_ERROR",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class PermissionDeniedError(AppError):
    """Permission denied (403)."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(
            code="PERMISSION_DENIED",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
        )


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )
        self.resource = resource
        self.identifier = identifier


class OverlapError(AppError):
    """
    User is already entitled to the resource through an equal or broader
    grant (409). details names the conflicting grant.
    """

    def __init__(self, message: str, conflicting_type: str, conflicting_target_id: Optional[str] = None):
        super().__init__(
            code="ALREADY_ENTITLED",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details={
                "conflicting_type": conflicting_type,
                "conflicting_target_id": conflicting_target_id,
            },
        )


class ConflictError(AppError):
    """Resource conflict (409)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="CONFLICT",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class SignatureError(AppError):
    """
    Webhook or payment signature mismatch (400). A security boundary, not a
    retryable condition: the associated state change is never applied.
    """

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(
            code="INVALID_SIGNATURE",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class GatewayError(AppError):
    """External payment gateway call failed (502)."""

    def __init__(self, message: str = "Payment gateway request failed", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="GATEWAY_ERROR",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )


class ServiceUnavailableError(AppError):
    """Service unavailable (503)."""

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class ConsistencyError(Exception):
    """
    A webhook references state that does not exist locally (e.g. an unknown
    gateway subscription id). Raised and caught inside the reconciler only:
    logged, and the delivery is acknowledged so the gateway does not retry
    forever for data that will never appear.
    """

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """X-Correlation-ID header first, then request state, then a new id."""
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        return correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    return generate_correlation_id()


def error_response(
    status_code: int,
    code: str,
    message: str,
    correlation_id: str,
    details: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "details": details or {}}},
        headers={"X-Correlation-ID": correlation_id},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Tags every response with a correlation id and turns escaped exceptions
    into the standard error body. Unexpected exceptions are logged in full
    and reported to the caller as INTERNAL_ERROR only.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id
        log_extra = {
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
        }

        try:
            response = await call_next(request)
        except AppError as e:
            logger.warning("Application error", extra={
                **log_extra, "error_code": e.code, "status_code": e.status_code,
            })
            return error_response(e.status_code, e.code, e.message, correlation_id, e.details)
        except HTTPException as e:
            logger.warning("HTTP exception", extra={**log_extra, "status_code": e.status_code})
            return error_response(e.status_code, "HTTP_ERROR", str(e.detail), correlation_id)
        except Exception as e:
            logger.exception("Unhandled exception", extra={**log_extra, "error_type": type(e).__name__})
            return error_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "INTERNAL_ERROR",
                "An unexpected error occurred",
                correlation_id,
                {"correlation_id": correlation_id},
            )

        response.headers["X-Correlation-ID"] = correlation_id
        return response
