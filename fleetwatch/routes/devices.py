"""
Device and latest-position API routes.

Proxies the tracking server and scopes every response to the caller:
administrators see all devices, clients only their allow-list.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from fleetwatch.exceptions import Forbidden
from fleetwatch.models import User
from fleetwatch.schemas import Device, Position
from fleetwatch.services.auth import get_current_user
from fleetwatch.services.scoping import can_view_device, scope_devices, scope_positions
from fleetwatch.services.tracking_client import TrackingClient, get_tracking_client

router = APIRouter(prefix="/api", tags=["devices"])


@router.get("/devices", response_model=list[Device])
async def list_devices(
    user: User = Depends(get_current_user),
    client: TrackingClient = Depends(get_tracking_client),
):
    """Devices visible to the current user, in upstream order."""
    devices = await client.list_devices()
    return scope_devices(user, devices)


@router.get("/devices/{device_id}", response_model=Device)
async def get_device(
    device_id: int,
    user: User = Depends(get_current_user),
    client: TrackingClient = Depends(get_tracking_client),
):
    """Single device. Checked against the allow-list before calling upstream."""
    if not can_view_device(user, device_id):
        raise Forbidden("Device not accessible")
    return await client.get_device(device_id)


@router.get("/positions", response_model=list[Position])
async def list_positions(
    device_id: Optional[int] = Query(None, alias="deviceId"),
    user: User = Depends(get_current_user),
    client: TrackingClient = Depends(get_tracking_client),
):
    """Latest positions, optionally for one device."""
    if device_id is not None and not can_view_device(user, device_id):
        raise Forbidden("Device not accessible")
    positions = await client.list_positions(device_id)
    return scope_positions(user, positions)
