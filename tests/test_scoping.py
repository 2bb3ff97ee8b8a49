"""
Device allow-list scoping tests.

Run with: pytest tests/test_scoping.py -v
"""
from fleetwatch.models import User
from fleetwatch.schemas import Device, Position
from fleetwatch.services.scoping import (
    allowed_device_ids,
    can_view_device,
    scope_devices,
    scope_positions,
)

from conftest import make_device, make_position


def _user(role="CLIENT", device_ids=None):
    return User(
        user_id="usr_test",
        email="someone@example.com",
        password_hash="x",
        name="Someone",
        role=role,
        active=True,
        device_ids=device_ids if device_ids is not None else [],
    )


def _devices(*ids):
    return [Device.model_validate(make_device(i)) for i in ids]


def _positions(*pairs):
    return [Position.model_validate(make_position(pid, did)) for pid, did in pairs]


# ============================================
# Test: Client scoping
# ============================================

class TestClientScoping:
    """Clients see exactly their allow-list intersected with upstream data."""

    def test_filters_devices_to_allow_list(self):
        user = _user(device_ids=[101, 205])
        devices = _devices(101, 102, 205, 300)

        scoped = scope_devices(user, devices)

        assert [d.id for d in scoped] == [101, 205]

    def test_preserves_upstream_order_not_allow_list_order(self):
        user = _user(device_ids=[300, 101])
        scoped = scope_devices(user, _devices(101, 102, 300))
        assert [d.id for d in scoped] == [101, 300]

    def test_filters_positions_by_device_id(self):
        user = _user(device_ids=[101, 205])
        positions = _positions((1, 101), (2, 102), (3, 205), (4, 300), (5, 101))

        scoped = scope_positions(user, positions)

        assert [p.id for p in scoped] == [1, 3, 5]

    def test_empty_allow_list_sees_nothing(self):
        user = _user(device_ids=[])
        assert scope_devices(user, _devices(101, 102)) == []
        assert scope_positions(user, _positions((1, 101))) == []

    def test_allow_list_ids_missing_upstream_are_ignored(self):
        user = _user(device_ids=[101, 999])
        assert [d.id for d in scope_devices(user, _devices(101, 102))] == [101]

    def test_scoping_is_idempotent(self):
        user = _user(device_ids=[101, 205])
        once = scope_devices(user, _devices(101, 102, 205, 300))
        twice = scope_devices(user, once)
        assert [d.id for d in twice] == [d.id for d in once]

    def test_can_view_device(self):
        user = _user(device_ids=[101])
        assert can_view_device(user, 101) is True
        assert can_view_device(user, 102) is False


# ============================================
# Test: Admin passthrough
# ============================================

class TestAdminScoping:
    """Administrators see everything regardless of their own allow-list."""

    def test_admin_sees_all_devices(self):
        admin = _user(role="ADMIN", device_ids=[])
        devices = _devices(101, 102, 205, 300)
        assert [d.id for d in scope_devices(admin, devices)] == [101, 102, 205, 300]

    def test_admin_sees_all_positions(self):
        admin = _user(role="ADMIN")
        positions = _positions((1, 101), (2, 102))
        assert len(scope_positions(admin, positions)) == 2

    def test_admin_can_view_any_device(self):
        assert can_view_device(_user(role="ADMIN"), 123456) is True

    def test_unknown_role_is_treated_as_client(self):
        user = _user(role="SUPERUSER", device_ids=[101])
        assert [d.id for d in scope_devices(user, _devices(101, 102))] == [101]


class TestAllowedDeviceIds:
    def test_non_integer_entries_are_dropped(self):
        user = _user(device_ids=[101, "205", "abc", None])
        assert allowed_device_ids(user) == {101, 205}
