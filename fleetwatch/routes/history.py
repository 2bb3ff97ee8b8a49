"""
History and report API routes.

All three endpoints take deviceId, from and to (ISO-8601). Missing or
malformed parameters are rejected with 400 before anything is sent upstream.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fleetwatch.exceptions import Forbidden
from fleetwatch.models import User
from fleetwatch.schemas import Position, SummaryReport, TripReport
from fleetwatch.services.auth import get_current_user
from fleetwatch.services.history import HistoryService
from fleetwatch.services.scoping import can_view_device
from fleetwatch.services.tracking_client import TrackingClient, get_tracking_client

router = APIRouter(prefix="/api", tags=["history"])


def get_history_service(
    client: TrackingClient = Depends(get_tracking_client),
) -> HistoryService:
    return HistoryService(client)


def parse_timestamp(name: str, value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing Z."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid '{name}' timestamp: {value}")


class WindowQuery:
    """deviceId/from/to query parameters shared by history and reports."""

    def __init__(
        self,
        device_id: Optional[str] = Query(None, alias="deviceId"),
        from_: Optional[str] = Query(None, alias="from"),
        to: Optional[str] = Query(None, alias="to"),
        user: User = Depends(get_current_user),
    ):
        if not device_id or not from_ or not to:
            raise HTTPException(
                status_code=400,
                detail="Missing required parameters: deviceId, from, to",
            )
        try:
            self.device_id = int(device_id)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid deviceId: {device_id}")

        self.from_ = parse_timestamp("from", from_)
        self.to = parse_timestamp("to", to)

        if not can_view_device(user, self.device_id):
            raise Forbidden("Device not accessible")


@router.get("/history", response_model=list[Position])
async def get_history(
    window: WindowQuery = Depends(),
    service: HistoryService = Depends(get_history_service),
):
    """Route points for a device, ascending by fix time. Empty if none."""
    return await service.get_history(window.device_id, window.from_, window.to)


@router.get("/reports/summary", response_model=SummaryReport)
async def get_summary(
    window: WindowQuery = Depends(),
    service: HistoryService = Depends(get_history_service),
):
    """Distance and speed summary for a device over the window."""
    return await service.get_summary(window.device_id, window.from_, window.to)


@router.get("/reports/trips", response_model=list[TripReport])
async def get_trips(
    window: WindowQuery = Depends(),
    service: HistoryService = Depends(get_history_service),
):
    """Trips for a device over the window."""
    return await service.get_trips(window.device_id, window.from_, window.to)
