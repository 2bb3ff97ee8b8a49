"""
Live view polling tests.

Tests for:
1. Snapshots are scoped to the viewer before reconciliation
2. Poll failures are published and the loop keeps going
3. stop() cancels polling and every marker timeline
4. A lost session ends polling; a changed allow-list rescopes it

Run with: pytest tests/test_live_sync.py -v
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from fleetwatch.config import Settings
from fleetwatch.exceptions import UpstreamUnavailable
from fleetwatch.models import User
from fleetwatch.schemas import Device, Position
from fleetwatch.services.live_sync import LiveView

from conftest import make_device, make_position


def _settings(**overrides):
    values = dict(
        debug=True,
        map_poll_interval_s=0.02,
        dashboard_poll_interval_s=0.05,
        animation_duration_s=0.05,
        extrapolation_horizon_s=0.05,
        frame_interval_s=0.01,
    )
    values.update(overrides)
    return Settings(**values)


def _user(role="CLIENT", device_ids=(101, 205)):
    return User(
        user_id="usr_viewer",
        email="viewer@example.com",
        password_hash="x",
        name="Viewer",
        role=role,
        active=True,
        device_ids=list(device_ids),
    )


@pytest.fixture
def client():
    mock = AsyncMock()
    mock.list_devices.return_value = [
        Device.model_validate(make_device(i, position_id=i * 10)) for i in (101, 102, 205, 300)
    ]
    mock.list_positions.return_value = [
        Position.model_validate(make_position(i * 10, i)) for i in (101, 102, 205, 300)
    ]
    return mock


def _drain(view):
    events = []
    while not view._queue.empty():
        events.append(view._queue.get_nowait())
    return events


# ============================================
# Test: Single poll
# ============================================

class TestPollOnce:
    @pytest.mark.asyncio
    async def test_snapshot_is_scoped_to_viewer(self, client):
        view = LiveView(client, _user(), settings=_settings())

        assert await view.poll_once() is True

        event = await view.next_event(timeout=1)
        assert event["event"] == "snapshot"
        data = event["data"]
        assert [d["id"] for d in data["devices"]] == [101, 205]
        assert "uniqueId" in data["devices"][0]
        assert [r["device_id"] for r in data["results"]] == [101, 205]
        assert all(r["action"] == "INITIAL" for r in data["results"])
        assert set(view.engine.tracks) == {101, 205}
        await view.stop()

    @pytest.mark.asyncio
    async def test_admin_sees_every_device(self, client):
        view = LiveView(client, _user(role="ADMIN", device_ids=()), settings=_settings())
        await view.poll_once()
        assert set(view.engine.tracks) == {101, 102, 205, 300}
        await view.stop()

    @pytest.mark.asyncio
    async def test_client_position_pointer_matches_across_device_ids(self, client):
        client.list_devices.return_value = [
            Device.model_validate(make_device(101, position_id=55)),
        ]
        client.list_positions.return_value = [
            Position.model_validate(make_position(55, 999, lat=33.60)),
            Position.model_validate(make_position(60, 101, lat=33.50)),
        ]
        view = LiveView(client, _user(device_ids=(101,)), settings=_settings())

        await view.poll_once()

        assert view.engine.get(101).position.id == 55
        assert set(view.engine.tracks) == {101}
        data = (await view.next_event(timeout=1))["data"]
        assert [d["id"] for d in data["devices"]] == [101]
        assert [m["device_id"] for m in data["markers"]] == [101]
        await view.stop()

    @pytest.mark.asyncio
    async def test_failure_is_published_not_raised(self, client):
        client.list_devices.side_effect = UpstreamUnavailable("Tracking server unreachable")
        view = LiveView(client, _user(), settings=_settings())

        assert await view.poll_once() is False

        event = await view.next_event(timeout=1)
        assert event == {
            "event": "error",
            "data": {"error": "upstream_unavailable", "detail": "Tracking server unreachable"},
        }
        assert view.failures == 1
        assert view.engine.tracks == {}
        await view.stop()

    @pytest.mark.asyncio
    async def test_next_event_times_out(self, client):
        view = LiveView(client, _user(), settings=_settings())
        assert await view.next_event(timeout=0.01) is None

    def test_unknown_view_kind(self, client):
        with pytest.raises(ValueError):
            LiveView(client, _user(), kind="satellite", settings=_settings())

    def test_poll_intervals(self, client):
        settings = _settings(map_poll_interval_s=10, dashboard_poll_interval_s=30)
        assert LiveView(client, _user(), kind="map", settings=settings).interval_s == 10
        assert LiveView(client, _user(), kind="dashboard", settings=settings).interval_s == 30


# ============================================
# Test: Poll loop
# ============================================

class TestPollLoop:
    @pytest.mark.asyncio
    async def test_polls_repeatedly_until_stopped(self, client):
        view = LiveView(client, _user(), settings=_settings())
        view.start()
        await asyncio.sleep(0.15)

        assert view.running
        assert view.polls >= 2

        await view.stop()
        polls = view.polls
        await asyncio.sleep(0.1)

        assert not view.running
        assert view.polls == polls
        assert view.engine.tracks == {}

    @pytest.mark.asyncio
    async def test_failed_poll_is_retried_on_next_tick(self, client):
        devices = client.list_devices.return_value
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise UpstreamUnavailable("down")
            return devices

        client.list_devices.side_effect = flaky
        async with LiveView(client, _user(), settings=_settings()) as view:
            await asyncio.sleep(0.1)
            events = _drain(view)

        kinds = [e["event"] for e in events]
        assert kinds[0] == "error"
        assert "snapshot" in kinds[1:]

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_end_loop(self, client):
        devices = client.list_devices.return_value
        calls = {"n": 0}

        async def broken_once():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("unexpected")
            return devices

        client.list_devices.side_effect = broken_once
        async with LiveView(client, _user(), settings=_settings()) as view:
            await asyncio.sleep(0.1)
            assert view.running
            assert view.failures == 1
            assert view.polls >= 2

    @pytest.mark.asyncio
    async def test_moving_device_publishes_frames(self, client):
        client.list_positions.return_value = [
            Position.model_validate(make_position(1010, 101, speed=30, course=90)),
        ]
        view = LiveView(client, _user(), settings=_settings(map_poll_interval_s=10))

        await view.poll_once()
        await asyncio.sleep(0.1)
        events = _drain(view)
        await view.stop()

        frames = [e for e in events if e["event"] == "frame"]
        assert frames
        assert all(f["data"]["device_id"] == 101 for f in frames)
        assert frames[-1]["data"]["phase"] == "EXTRAPOLATING"

    @pytest.mark.asyncio
    async def test_stop_cancels_marker_timelines(self, client):
        client.list_positions.return_value = [
            Position.model_validate(make_position(1010, 101, speed=30)),
        ]
        view = LiveView(client, _user(), settings=_settings(extrapolation_horizon_s=30))
        await view.poll_once()
        assert view.engine.active_timelines() == 1

        await view.stop()

        assert view.engine.active_timelines() == 0


# ============================================
# Test: Session re-check
# ============================================

class TestSessionCheck:
    @pytest.mark.asyncio
    async def test_ended_session_stops_loop(self, client):
        session_check = AsyncMock(return_value=None)
        view = LiveView(client, _user(), settings=_settings(), session_check=session_check)
        view.start()
        await asyncio.sleep(0.1)

        assert not view.running
        assert view.session_ended
        assert view.polls == 0
        assert view.engine.tracks == {}
        assert _drain(view) == [{"event": "session_ended", "data": {"user_id": "usr_viewer"}}]
        await view.stop()

    @pytest.mark.asyncio
    async def test_session_lost_between_polls(self, client):
        session_check = AsyncMock(side_effect=[_user(), None])
        view = LiveView(client, _user(), settings=_settings(), session_check=session_check)
        view.start()
        await asyncio.sleep(0.1)

        kinds = [e["event"] for e in _drain(view)]
        assert kinds == ["snapshot", "session_ended"]
        assert view.polls == 1
        assert view.engine.tracks == {}
        assert not view.running
        await view.stop()

    @pytest.mark.asyncio
    async def test_allow_list_edit_rescopes_next_poll(self, client):
        session_check = AsyncMock(return_value=_user(device_ids=(300,)))
        view = LiveView(client, _user(), settings=_settings(), session_check=session_check)

        assert await view.check_session() is True
        await view.poll_once()

        data = (await view.next_event(timeout=1))["data"]
        assert [d["id"] for d in data["devices"]] == [300]
        assert view.user.device_ids == [300]
        await view.stop()

    @pytest.mark.asyncio
    async def test_without_checker_session_is_kept(self, client):
        view = LiveView(client, _user(), settings=_settings())
        assert await view.check_session() is True
        assert not view.session_ended


# ============================================
# Test: Backpressure
# ============================================

class TestEventQueue:
    @pytest.mark.asyncio
    async def test_full_queue_drops_frames_then_oldest(self, client):
        with patch("fleetwatch.services.live_sync.MAX_QUEUED_EVENTS", 2):
            view = LiveView(client, _user(), settings=_settings())

        view._publish("snapshot", {"n": 1})
        view._publish("snapshot", {"n": 2})
        view._publish("frame", {"n": 3}, droppable=True)
        view._publish("error", {"n": 4})

        assert [e["data"]["n"] for e in _drain(view)] == [2, 4]
