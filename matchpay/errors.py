"""
matchpay/errors.py
HTTP error contract for the match payments API

Every error body has the same shape:
{
    "success": false,
    "error": "Conflict",
    "message": "The payment window has not opened yet.",
    "code": "WINDOW_NOT_ACTIVE",
    "details": {...}            (only when there is something to add)
}

Domain failures carry their own code (see matchpay/exceptions.py); the codes
below cover failures raised by the HTTP layer itself.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from matchpay.exceptions import PaymentFlowError

logger = logging.getLogger(__name__)


class ErrorCode:
    """Codes produced outside the payment flow"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


STATUS_LABELS = {
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    409: "Conflict",
    422: "Validation Error",
    429: "Too Many Requests",
    500: "Internal Error",
    502: "Bad Gateway",
}


class APIError(Exception):
    """An error that is rendered straight into the response contract."""

    def __init__(
        self,
        status_code: int,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ):
        self.status_code = status_code
        self.error = error or STATUS_LABELS.get(status_code, "Error")
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = ErrorResponse(
            error=self.error,
            message=self.message,
            code=self.code,
            details=self.details or None,
        )
        return body.model_dump(exclude_none=True)

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class FeatureDisabledError(APIError):
    """403 - the feature flag guarding an endpoint is off"""
    def __init__(self, feature: str):
        super().__init__(
            status.HTTP_403_FORBIDDEN,
            f"{feature} is disabled",
            ErrorCode.FEATURE_DISABLED,
        )


class InternalError(APIError):
    """500 - only the log id leaves the server"""
    def __init__(self, log_id: str):
        super().__init__(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "An unexpected error occurred. Please try again later.",
            ErrorCode.INTERNAL_ERROR,
            details={"log_id": log_id},
        )


def from_domain_error(exc: PaymentFlowError) -> APIError:
    """Map a payment flow error onto the contract.

    Clients get the user-facing message; the internal message stays in logs.
    """
    return APIError(exc.status_code, exc.user_message, exc.code, details=exc.details or None)


def validation_error(errors: List[Dict[str, Any]]) -> APIError:
    return APIError(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Request validation failed",
        ErrorCode.VALIDATION_ERROR,
        details={
            "errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
                for e in errors
            ]
        },
    )


def rate_limited(limit: str) -> APIError:
    return APIError(
        status.HTTP_429_TOO_MANY_REQUESTS,
        f"Rate limit exceeded: {limit}",
        ErrorCode.RATE_LIMITED,
    )


def internal_error_response(exc: Exception, context: str = "") -> JSONResponse:
    """Log an unexpected error under a short id and return a safe 500."""
    log_id = uuid.uuid4().hex[:8]
    logger.error(f"[{log_id}] Internal error in {context}: {type(exc).__name__}: {exc}", exc_info=exc)
    return InternalError(log_id).to_response()
