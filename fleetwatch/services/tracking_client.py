"""
Client for the upstream GPS tracking server's REST API.

Wraps outbound calls behind a stable contract:
    list_devices()                         GET /devices
    get_device(device_id)                  GET /devices/{id}
    list_positions(device_id=None)         GET /positions
    list_positions_in_range(id, from, to)  GET /positions?from&to
    list_summary(id, from, to)             GET /reports/summary
    list_trips(id, from, to)               GET /reports/trips

Authenticates with static HTTP basic credentials, which are unrelated to the
dashboard's own user sessions. Calls are bounded by a timeout and never
retried here; the caller's next poll is the retry.
"""
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog
from pydantic import ValidationError

from fleetwatch.config import Settings, get_settings
from fleetwatch.exceptions import (
    InvalidRange,
    UpstreamAuthFailed,
    UpstreamError,
    UpstreamUnavailable,
)
from fleetwatch.schemas import Device, Position, SummaryReport, TripReport

logger = structlog.get_logger("tracking_client")


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with a Z suffix, as the tracking server expects."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def validate_range(from_: datetime, to: datetime) -> None:
    """Raise InvalidRange unless to > from."""
    if to <= from_:
        raise InvalidRange("'to' must be later than 'from'")


def _fix_time_key(position: Position):
    fix_time = position.fix_time
    if fix_time is None:
        return (0, datetime.min.replace(tzinfo=timezone.utc), position.id)
    if fix_time.tzinfo is None:
        fix_time = fix_time.replace(tzinfo=timezone.utc)
    return (1, fix_time, position.id)


def sort_by_fix_time(positions: list[Position]) -> list[Position]:
    """Ascending by fix time; positions without a fix time come first."""
    return sorted(positions, key=_fix_time_key)


class TrackingClient:
    """Async REST client for the tracking server. Safe for concurrent use."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.upstream_base_url.rstrip("/"),
            auth=httpx.BasicAuth(self.settings.upstream_username, self.settings.upstream_password),
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(self.settings.upstream_timeout_s),
            limits=httpx.Limits(max_connections=20),
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> "TrackingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ============ Transport ============

    async def _get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        """GET an endpoint and decode JSON, mapping failures to the error taxonomy."""
        try:
            response = await self._client.get(endpoint, params=params)
        except httpx.TimeoutException as e:
            logger.warning("Upstream timeout", endpoint=endpoint)
            raise UpstreamUnavailable(f"Tracking server timed out: {e}", endpoint=endpoint) from e
        except httpx.TransportError as e:
            logger.warning("Upstream unreachable", endpoint=endpoint, error=str(e))
            raise UpstreamUnavailable(f"Tracking server unreachable: {e}", endpoint=endpoint) from e

        if response.status_code in (401, 403):
            logger.error("Upstream rejected credentials", endpoint=endpoint, status=response.status_code)
            raise UpstreamAuthFailed(endpoint=endpoint)

        if response.is_error:
            body = self._error_body(response)
            logger.warning("Upstream error", endpoint=endpoint, status=response.status_code)
            raise UpstreamError(
                _error_message(body, response.status_code),
                status=response.status_code,
                body=body,
                endpoint=endpoint,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                "Tracking server returned invalid JSON",
                status=response.status_code,
                body=response.text[:500],
                endpoint=endpoint,
            ) from e

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text[:500] or None

    async def _get_list(self, endpoint: str, model, params: Optional[dict] = None) -> list:
        data = await self._get(endpoint, params)
        if not isinstance(data, list):
            raise UpstreamError("Expected a JSON array", status=200, body=data, endpoint=endpoint)
        try:
            return [model.model_validate(item) for item in data]
        except ValidationError as e:
            raise UpstreamError(
                f"Unexpected record shape: {e.error_count()} validation errors",
                status=200,
                endpoint=endpoint,
            ) from e

    @staticmethod
    def _range_params(device_id: int, from_: datetime, to: datetime) -> dict:
        validate_range(from_, to)
        return {
            "deviceId": device_id,
            "from": format_timestamp(from_),
            "to": format_timestamp(to),
        }

    # ============ Devices ============

    async def list_devices(self) -> list[Device]:
        """All devices visible to the configured upstream account."""
        return await self._get_list("/devices", Device)

    async def get_device(self, device_id: int) -> Device:
        """A single device by id."""
        data = await self._get(f"/devices/{device_id}")
        try:
            return Device.model_validate(data)
        except ValidationError as e:
            raise UpstreamError("Unexpected device shape", status=200, endpoint="/devices") from e

    # ============ Positions ============

    async def list_positions(self, device_id: Optional[int] = None) -> list[Position]:
        """
        Latest positions, optionally for one device.

        The upstream filter is re-applied locally since it is not guaranteed
        to be exact.
        """
        params = {"deviceId": device_id} if device_id is not None else None
        positions = await self._get_list("/positions", Position, params)
        if device_id is not None:
            positions = [p for p in positions if p.device_id == device_id]
        return positions

    async def list_positions_in_range(
        self,
        device_id: int,
        from_: datetime,
        to: datetime,
    ) -> list[Position]:
        """Route points for a device between from_ and to, ascending by fix time."""
        params = self._range_params(device_id, from_, to)
        positions = await self._get_list("/positions", Position, params)
        positions = [p for p in positions if p.device_id == device_id]
        return sort_by_fix_time(positions)

    # ============ Reports ============

    async def list_summary(self, device_id: int, from_: datetime, to: datetime) -> SummaryReport:
        """Distance and speed summary for a device over a period."""
        params = self._range_params(device_id, from_, to)
        data = await self._get("/reports/summary", params)
        # Upstream returns one summary per requested device
        if isinstance(data, list):
            data = next(
                (item for item in data if isinstance(item, dict) and item.get("deviceId") == device_id),
                data[0] if data else {"deviceId": device_id},
            )
        try:
            return SummaryReport.model_validate(data)
        except ValidationError as e:
            raise UpstreamError("Unexpected summary shape", status=200, endpoint="/reports/summary") from e

    async def list_trips(self, device_id: int, from_: datetime, to: datetime) -> list[TripReport]:
        """Trips for a device over a period."""
        params = self._range_params(device_id, from_, to)
        return await self._get_list("/reports/trips", TripReport, params)


def _error_message(body: Any, status: int) -> str:
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    if isinstance(body, str) and body:
        return body[:200]
    return f"Tracking server returned {status}"


# Process-wide client, created in the app lifespan
_client: Optional[TrackingClient] = None


def get_tracking_client() -> TrackingClient:
    """FastAPI dependency returning the shared client."""
    global _client
    if _client is None:
        _client = TrackingClient()
    return _client


async def close_tracking_client() -> None:
    """Close the shared client on shutdown."""
    global _client
    if _client is not None:
        await _client.close()
        _client = None
