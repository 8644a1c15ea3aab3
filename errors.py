"""Error taxonomy and the shared JSON error envelope."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional


def generate_completion_id() -> str:
    """Opaque id for a chat completion / stream."""
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:24]}"


def error_body(
    message: str,
    error_type: str,
    param: Optional[str] = None,
    code: Optional[str] = None,
) -> Dict[str, Any]:
    """Build {"error": {message, type, param?, code?}}."""
    err: Dict[str, Any] = {"message": message, "type": error_type}
    if param:
        err["param"] = param
    if code:
        err["code"] = code
    return {"error": err}


class GatewayError(Exception):
    """Base class for errors that map onto an HTTP error envelope."""

    status_code = 500
    error_type = "internal_server_error"

    def __init__(
        self,
        message: str,
        *,
        param: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.param = param
        self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return error_body(self.message, self.error_type, self.param, self.code)


class InvalidRequest(GatewayError):
    """Missing/malformed field or unsupported parameter value."""

    status_code = 400
    error_type = "invalid_request_error"


class ModelNotFound(InvalidRequest):
    status_code = 404


class AuthError(GatewayError):
    """Bad client credentials, or missing remote credential configuration."""

    status_code = 401
    error_type = "auth_error"


class UpstreamUnavailable(GatewayError):
    """Connection refused, DNS failure or timeout against a backend."""

    status_code = 502
    error_type = "api_error"


class UpstreamStatusError(GatewayError):
    """Backend answered with a non-2xx status."""

    status_code = 500
    error_type = "api_error"

    def __init__(self, message: str, *, upstream_status: int, body: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status
        self.body = body

    @property
    def is_unknown_model(self) -> bool:
        """Ollama answers 404 with 'model "x" not found' for models it does not have."""
        if self.upstream_status == 404:
            return True
        low = (self.body or "").lower()
        return "model" in low and "not found" in low


class UpstreamMalformed(GatewayError):
    """A single backend frame could not be parsed."""

    status_code = 502
    error_type = "api_error"


class InternalError(GatewayError):
    pass
