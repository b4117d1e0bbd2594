"""Fault taxonomy shared by the gateway and its response lifecycle.

Every fault carries a machine-readable ``code`` plus an OpenAI-style ``type``
so clients can branch on it, and optionally the request id for correlation.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

LOG = logging.getLogger(__name__)

TIMEOUT_MESSAGES = {
    "base": "Request timeout",
    "streaming": "Streaming timeout",
    "inactivity": "Request timeout due to inactivity",
}


class GatewayFault(Exception):
    """Base class for all faults rendered to clients."""

    kind = "internal"
    status_code = 500
    error_type = "api_error"
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        request_id: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.request_id = request_id
        self.headers: dict[str, str] = dict(headers or {})

    def to_payload(self, request_id: str | None = None) -> dict[str, Any]:
        """Build the OpenAI-style error body."""
        error: dict[str, Any] = {
            "message": self.message,
            "type": self.error_type,
            "code": self.code,
        }
        rid = request_id or self.request_id
        if rid:
            error["request_id"] = rid
        return {"error": error}


class ValidationFault(GatewayFault):
    kind = "validation"
    status_code = 400
    error_type = "invalid_request_error"
    code = "validation_error"
    default_message = "Invalid request"

    def __init__(self, message: str | None = None, *, field: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field


class UnauthorizedFault(GatewayFault):
    kind = "unauthorized"
    status_code = 401
    error_type = "authentication_error"
    code = "unauthorized"
    default_message = "Unauthorized"


class RateLimitFault(GatewayFault):
    kind = "rate_limit"
    status_code = 429
    error_type = "rate_limit_error"
    code = "rate_limit_exceeded"
    default_message = "Too many requests, please try again later."

    def __init__(self, message: str | None = None, *, retry_after: int = 60, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))
        self.headers.setdefault("Retry-After", str(self.retry_after))


class TimeoutFault(GatewayFault):
    """Deadline expiry; ``phase`` names the watchdog that fired."""

    kind = "timeout"
    status_code = 408
    error_type = "timeout_error"
    code = "timeout"

    def __init__(self, phase: str = "base", message: str | None = None, **kwargs: Any) -> None:
        if phase not in TIMEOUT_MESSAGES:
            raise ValueError(f"unknown timeout phase: {phase}")
        super().__init__(message or TIMEOUT_MESSAGES[phase], **kwargs)
        self.phase = phase


class UpstreamFault(GatewayFault):
    """Failure reported by or while reaching the upstream provider."""

    kind = "upstream"
    status_code = 502
    error_type = "api_error"
    code = "upstream_error"
    default_message = "Upstream service error"

    def __init__(self, message: str | None = None, *, upstream_status: int | None = None, **kwargs: Any) -> None:
        status, code = _remap_upstream_status(upstream_status)
        kwargs.setdefault("status_code", status)
        kwargs.setdefault("code", code)
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status


class InternalFault(GatewayFault):
    kind = "internal"


def _remap_upstream_status(upstream_status: int | None) -> tuple[int, str]:
    """Map an upstream HTTP status onto the status/code shown to clients."""
    if upstream_status is None:
        return 502, "upstream_error"
    if upstream_status == 401:
        return 401, "invalid_api_key"
    if upstream_status == 429:
        return 429, "upstream_rate_limit"
    if upstream_status >= 500:
        return 502, "upstream_error"
    if upstream_status >= 400:
        return upstream_status, "upstream_error"
    return 502, "upstream_error"


def timeout_fault_for_reason(reason: str, *, request_id: str | None = None) -> TimeoutFault | None:
    """Return the timeout fault that matches one watchdog termination reason."""
    phase, _, suffix = reason.partition("_")
    if suffix != "timeout" or phase not in TIMEOUT_MESSAGES:
        return None
    return TimeoutFault(phase, request_id=request_id)


def fault_from_exception(exc: BaseException, *, request_id: str | None = None) -> GatewayFault:
    """Translate any exception into the fault taxonomy."""
    if isinstance(exc, GatewayFault):
        if request_id and not exc.request_id:
            exc.request_id = request_id
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code if exc.response is not None else None
        return UpstreamFault(
            f"Upstream returned HTTP {status}",
            upstream_status=status,
            request_id=request_id,
        )
    if isinstance(exc, httpx.TimeoutException):
        return TimeoutFault("base", "Upstream request timed out", request_id=request_id)
    if isinstance(exc, httpx.ConnectError):
        return UpstreamFault(
            "Upstream service unavailable",
            status_code=503,
            code="service_unavailable",
            request_id=request_id,
        )
    if isinstance(exc, httpx.TransportError):
        return UpstreamFault("Upstream connection failed", request_id=request_id)
    LOG.debug("unclassified exception mapped to internal fault type=%s", type(exc).__name__)
    return InternalFault(request_id=request_id)
