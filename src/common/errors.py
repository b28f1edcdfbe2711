# src/common/errors.py

"""
Error taxonomy for the Ollama gateway.

Every ProxyError knows the HTTP status and JSON body it maps to; the
gateway's exception handlers render them. WarmupError and ConfigError never
reach a client: the first is logged by the model warmer, the second stops
the process at startup.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ProxyError(Exception):
    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error}
        if self.message:
            payload["message"] = self.message
        return payload


class AuthenticationError(ProxyError):
    status_code = 401
    error = "Unauthorized"


class InvalidPayloadError(ProxyError):
    status_code = 400
    error = "Invalid JSON body"


class PayloadTooLargeError(ProxyError):
    status_code = 413
    error = "Payload too large"


class BackendUnavailableError(ProxyError):
    """Connection to the backend was refused or the host is unreachable."""

    status_code = 503
    error = "Ollama service unavailable"

    def __init__(self, backend_url: str):
        super().__init__(f"Make sure Ollama is running on {backend_url}")
        self.backend_url = backend_url


class BackendResponseError(ProxyError):
    """The backend answered with a non-2xx status; passed through verbatim."""

    def __init__(
        self,
        status_code: int,
        body: bytes,
        content_type: Optional[str] = None,
    ):
        super().__init__(f"backend returned HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.content_type = content_type or "application/json"


class ProxyInternalError(ProxyError):
    status_code = 500
    error = "Internal server error"


class WarmupError(Exception):
    """Warmup could not complete. `hint` is operator guidance for the log."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class ConfigError(Exception):
    pass
