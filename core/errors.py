"""
core/errors.py -- Error taxonomy for device registration and provisioning.

Every failure a device-facing operation can produce is one of these classes.
Each class carries the HTTP status and the machine-readable error code it maps
to, so the API layer needs exactly one exception handler (api/main.py) and the
domain layers never import FastAPI.

    ValidationError    400  malformed input, caller must fix it
    Unauthorized       403  unknown hash or unapproved device; device backs off
    NotFoundError      404  unknown device id
    IllegalTransition  409  status change not in the transition table
    ConcurrentUpdate   409  write kept losing to concurrent writers; retry
    RateLimited        429  caller waits retry_after seconds
    ConfigError        500  operator-fixable configuration fault, never retried
    UpstreamError      500  credential authority failed; device may retry later

Layer rule: core/ is the kernel -- stdlib only, no reverse dependencies.
"""

from __future__ import annotations

from typing import Optional


class ProvisioningError(Exception):
    """Base class. Subclasses override status_code and code."""

    status_code: int = 500
    code: str = "provisioning_error"

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(ProvisioningError):
    status_code = 400
    code = "validation_error"


class Unauthorized(ProvisioningError):
    status_code = 403
    code = "unauthorized_device"


class NotFoundError(ProvisioningError):
    status_code = 404
    code = "not_found"


class IllegalTransition(ProvisioningError):
    """Raised by the registry when a status write is not in the transition table."""

    status_code = 409
    code = "illegal_transition"

    def __init__(self, from_status: Optional[str], to_status: str) -> None:
        super().__init__(
            "Illegal provisioning status transition.",
            detail=f"{from_status or '(none)'} -> {to_status}",
        )
        self.from_status = from_status
        self.to_status = to_status


class ConcurrentUpdate(ProvisioningError):
    """A legal write lost every optimistic retry to concurrent writers."""

    status_code = 409
    code = "concurrent_update"


class RateLimited(ProvisioningError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message, detail=f"Retry after {retry_after} seconds.")
        self.retry_after = max(1, int(retry_after))


class ConfigError(ProvisioningError):
    status_code = 500
    code = "config_error"


class UpstreamError(ProvisioningError):
    """A credential authority answered with an error or an unusable payload.

    upstream_status is None when the request never got an HTTP response
    (timeout, DNS failure, connection reset).
    """

    status_code = 500
    code = "upstream_error"

    def __init__(self, message: str, upstream_status: Optional[int] = None, upstream_body: str = "") -> None:
        super().__init__(message, detail=_summarize(upstream_status, upstream_body))
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


def _summarize(status: Optional[int], body: str) -> str:
    # Upstream bodies can be large HTML error pages; 200 chars is enough to diagnose.
    snippet = (body or "")[:200]
    if status is None:
        return f"no response: {snippet}"
    return f"HTTP {status}: {snippet}"
