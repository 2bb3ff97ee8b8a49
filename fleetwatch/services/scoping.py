"""
Device-level access scoping.

Administrators see every device. Everyone else sees only the devices whose
id is on their allow-list; an empty allow-list means nothing is visible.
Scoping preserves the order of the input, not of the allow-list.
"""
from typing import Iterable, TypeVar

from fleetwatch.models import User
from fleetwatch.schemas import Device, Position
from fleetwatch.services.auth import Role, role_of

T = TypeVar("T", Device, Position)


def allowed_device_ids(user: User) -> set[int]:
    """Allow-list as a set; ids that aren't integers are dropped."""
    allowed = set()
    for device_id in user.device_ids or []:
        try:
            allowed.add(int(device_id))
        except (TypeError, ValueError):
            continue
    return allowed


def can_view_device(user: User, device_id: int) -> bool:
    """Check if a user may see a single device."""
    if role_of(user) >= Role.ADMIN:
        return True
    return device_id in allowed_device_ids(user)


def _scope(user: User, items: Iterable[T], key) -> list[T]:
    items = list(items)
    if role_of(user) >= Role.ADMIN:
        return items
    allowed = allowed_device_ids(user)
    return [item for item in items if key(item) in allowed]


def scope_devices(user: User, devices: Iterable[Device]) -> list[Device]:
    """Devices the user may see, in input order."""
    return _scope(user, devices, lambda device: device.id)


def scope_positions(user: User, positions: Iterable[Position]) -> list[Position]:
    """Positions belonging to devices the user may see, in input order."""
    return _scope(user, positions, lambda position: position.device_id)
