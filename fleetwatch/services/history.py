"""
Historical route and report queries.

Validates the requested window locally before any upstream call:
- to must be later than from (InvalidRange)
- the span may not exceed max_history_days (RangeTooLarge); ranges are
  never silently truncated
An empty route is a valid result, distinct from an upstream failure.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from fleetwatch.config import Settings, get_settings
from fleetwatch.exceptions import RangeTooLarge
from fleetwatch.schemas import Position, SummaryReport, TripReport
from fleetwatch.services.tracking_client import TrackingClient, validate_range

logger = structlog.get_logger("history")


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class HistoryService:
    """Bounded history queries against the tracking server."""

    def __init__(self, client: TrackingClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or get_settings()

    @property
    def max_span(self) -> timedelta:
        return timedelta(days=self.settings.max_history_days)

    def validate_window(self, from_: datetime, to: datetime) -> tuple[datetime, datetime]:
        """Normalize to UTC and check ordering and span."""
        from_, to = ensure_utc(from_), ensure_utc(to)
        validate_range(from_, to)
        if to - from_ > self.max_span:
            raise RangeTooLarge(
                f"Time range may not exceed {self.settings.max_history_days} days"
            )
        return from_, to

    async def get_history(self, device_id: int, from_: datetime, to: datetime) -> list[Position]:
        """Route points for a device, ascending by fix time."""
        from_, to = self.validate_window(from_, to)
        positions = await self.client.list_positions_in_range(device_id, from_, to)
        logger.info("History fetched", device_id=device_id, points=len(positions))
        return positions

    async def get_summary(self, device_id: int, from_: datetime, to: datetime) -> SummaryReport:
        from_, to = self.validate_window(from_, to)
        return await self.client.list_summary(device_id, from_, to)

    async def get_trips(self, device_id: int, from_: datetime, to: datetime) -> list[TripReport]:
        from_, to = self.validate_window(from_, to)
        return await self.client.list_trips(device_id, from_, to)
