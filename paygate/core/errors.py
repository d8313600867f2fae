# paygate/core/errors.py
"""
Gateway error taxonomy and the JSON envelope used for every
gateway-produced (non-proxied) response.

Only validation, authorization and endpoint-lookup errors change what the
client sees. Upstream connection failures map to a single 502 PROXY_ERROR.
Persistence errors never leave the gateway.
"""
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from paygate.core.config import settings


class GatewayError(Exception):
    """Base class for errors rendered as a gateway error envelope."""

    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Any = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.message
        self.details = details
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(GatewayError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Invalid request"


class MissingClaimHeaders(ValidationError):
    code = "MISSING_HEADERS"
    message = "Missing required validation headers"

    def __init__(self, required, missing=None):
        self.required = list(required)
        self.missing = list(missing or [])
        super().__init__(details={"missing": self.missing})


class AuthenticationRequired(GatewayError):
    status_code = 401
    code = "UNAUTHORIZED"
    message = "Access token required"


class AuthorizationError(GatewayError):
    status_code = 403
    code = "ACCESS_DENIED"
    message = "Access denied"


class InvalidSignature(AuthorizationError):
    code = "INVALID_SIGNATURE"
    message = "Agent signature verification failed"


class AgentNotAllowed(AuthorizationError):
    code = "AGENT_NOT_ALLOWED"
    message = "Agent wallet is not authorized for this API"


class InvalidTransaction(AuthorizationError):
    code = "INVALID_TRANSACTION"
    message = "Invalid or not found validator transaction"


class EndpointInactive(AuthorizationError):
    code = "API_INACTIVE"
    message = "This API is currently disabled"


class EndpointNotFound(GatewayError):
    status_code = 404
    code = "API_NOT_FOUND"
    message = "API not found"


class UpstreamError(GatewayError):
    """The upstream API could not be reached (refused, DNS, timeout)."""

    status_code = 502
    code = "PROXY_ERROR"
    message = "Failed to reach original API"

    def __init__(self, cause: str = "other", message: Optional[str] = None, details: Any = None):
        self.cause = cause
        super().__init__(message=message, details=details)


class PersistenceError(Exception):
    """A storage operation failed for a reason other than a duplicate key."""


def error_envelope(code: str, message: str, details: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details is not None and settings.is_development:
        error["details"] = details
    return {"success": False, "error": error}


def success_envelope(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def error_response(error: GatewayError) -> JSONResponse:
    content = error_envelope(error.code, error.message, error.details)
    if isinstance(error, MissingClaimHeaders):
        content["error"]["required"] = error.required
    return JSONResponse(status_code=error.status_code, content=content)
