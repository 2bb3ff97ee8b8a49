"""Error taxonomy shared by services and routes.

Each error carries a stable ``kind`` and the HTTP status it maps to; the
handler in ``fleetwatch.main`` renders them as JSON.
"""
from typing import Any, Optional


class FleetWatchError(Exception):
    """Base exception for all fleetwatch errors."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__doc__ or self.kind
        super().__init__(self.message)


class Unauthorized(FleetWatchError):
    """Authentication required"""

    kind = "unauthorized"
    status_code = 401


class Forbidden(FleetWatchError):
    """Insufficient permissions"""

    kind = "forbidden"
    status_code = 403


class InvalidCredentials(FleetWatchError):
    """Invalid email or password"""

    kind = "invalid_credentials"
    status_code = 401

    def __init__(self) -> None:
        # Same message for unknown email and wrong password
        super().__init__("Invalid email or password")


class NotFound(FleetWatchError):
    """Resource not found"""

    kind = "not_found"
    status_code = 404


class Conflict(FleetWatchError):
    """Resource already exists"""

    kind = "conflict"
    status_code = 409


class InvalidRange(FleetWatchError):
    """'to' must be later than 'from'"""

    kind = "invalid_range"
    status_code = 400


class RangeTooLarge(FleetWatchError):
    """Requested time range exceeds the allowed maximum"""

    kind = "range_too_large"
    status_code = 400


class UpstreamFailure(FleetWatchError):
    """Tracking server request failed."""

    kind = "upstream_failure"
    status_code = 502

    def __init__(self, message: str = "", *, endpoint: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(message)


class UpstreamUnavailable(UpstreamFailure):
    """Tracking server unreachable or timed out"""

    kind = "upstream_unavailable"
    status_code = 503


class UpstreamAuthFailed(UpstreamFailure):
    """Tracking server rejected the configured credentials"""

    kind = "upstream_auth_failed"
    status_code = 502


class UpstreamError(UpstreamFailure):
    """Tracking server returned an error response."""

    kind = "upstream_error"

    def __init__(
        self,
        message: str = "",
        *,
        status: Optional[int] = None,
        body: Any = None,
        endpoint: str = "",
    ) -> None:
        self.status = status
        self.body = body
        # Forward upstream 4xx/5xx verbatim, anything else becomes a 500
        if status is not None and 400 <= status <= 599:
            self.status_code = status
        else:
            self.status_code = 500
        super().__init__(message or f"Tracking server returned {status}", endpoint=endpoint)
