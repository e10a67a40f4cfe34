from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field

from .routing.exceptions import (
    CapacityExhausted,
    ConfigError,
    GatewayError,
    ModelNotFound,
    RouteValidationError,
    SecurityRejection,
    UpstreamError,
)


class ErrorResponse(BaseModel):
    """
    Standard error payload returned by every gateway endpoint:
    {
        "error": "not_found",
        "message": "No provider could serve model 'x'",
        "code": 404,
        "details": {...}
    }
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(
        error=error,
        message=message,
        code=status_code,
        details=details,
    )
    return HTTPException(status_code=status_code, detail=payload.model_dump())


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_400_BAD_REQUEST, error="bad_request", message=message, details=details
    )


def not_found(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_404_NOT_FOUND, error="not_found", message=message, details=details
    )


def bad_gateway(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_502_BAD_GATEWAY, error="bad_gateway", message=message, details=details
    )


def service_unavailable(
    message: str, *, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        error="service_unavailable",
        message=message,
        details=details,
    )


def to_http_error(exc: GatewayError) -> HTTPException:
    """
    Map a resolution-engine exception onto the standard error payload.
    """
    if isinstance(exc, SecurityRejection):
        # Never echo the offending name or any path back to the caller.
        return http_error(
            status.HTTP_400_BAD_REQUEST,
            error="security_rejection",
            message="Invalid model name",
        )
    if isinstance(exc, RouteValidationError):
        return bad_request(str(exc), details=exc.details)
    if isinstance(exc, ModelNotFound):
        return not_found(
            str(exc),
            details={
                "model": exc.model_name,
                "attempted_providers": exc.attempted_providers,
            },
        )
    if isinstance(exc, CapacityExhausted):
        return service_unavailable(
            str(exc), details={"required_bytes": exc.required_bytes}
        )
    if isinstance(exc, UpstreamError):
        return bad_gateway(str(exc))
    if isinstance(exc, ConfigError):
        return http_error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="config_error",
            message="Gateway provider configuration is invalid",
        )
    return http_error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        error="internal_error",
        message="Unexpected gateway error",
    )


__all__ = [
    "ErrorResponse",
    "http_error",
    "bad_request",
    "bad_gateway",
    "not_found",
    "service_unavailable",
    "to_http_error",
]
