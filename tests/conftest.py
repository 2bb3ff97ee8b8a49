"""
Pytest configuration and fixtures for FleetWatch tests.
"""
import os
import sys

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment before importing app
os.environ["DEBUG"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["UPSTREAM_BASE_URL"] = "http://tracker.test/api"
os.environ["UPSTREAM_USERNAME"] = "api@tracker.test"
os.environ["UPSTREAM_PASSWORD"] = "upstream-secret"
os.environ["RATE_LIMIT_LOGIN"] = "1000"
os.environ["BOOTSTRAP_ADMIN_EMAIL"] = ""
os.environ["BOOTSTRAP_ADMIN_PASSWORD"] = ""

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import StaticPool

from fleetwatch.database import build_engine, get_session, get_session_factory, init_db
from fleetwatch.main import app
from fleetwatch.models import User
from fleetwatch.schemas import UserCreate
from fleetwatch.services.auth import create_session
from fleetwatch.services.tracking_client import TrackingClient, get_tracking_client
from fleetwatch.services.users import create_user


# ============================================
# Upstream tracking server double
# ============================================

def make_device(device_id: int, position_id=None, name=None, status="online") -> dict:
    """Device JSON as the tracking server returns it."""
    return {
        "id": device_id,
        "name": name or f"Vehicle {device_id}",
        "uniqueId": f"IMEI{device_id:06d}",
        "status": status,
        "disabled": False,
        "lastUpdate": "2026-10-19T08:00:00.000+00:00",
        "positionId": position_id,
        "category": "car",
        "attributes": {},
    }


def make_position(position_id: int, device_id: int, lat=33.5731, lon=-7.5898,
                  speed=0.0, course=0.0, fix_time="2026-10-19T08:00:00.000+00:00") -> dict:
    """Position JSON as the tracking server returns it."""
    return {
        "id": position_id,
        "deviceId": device_id,
        "protocol": "osmand",
        "deviceTime": fix_time,
        "fixTime": fix_time,
        "serverTime": fix_time,
        "outdated": False,
        "valid": True,
        "latitude": lat,
        "longitude": lon,
        "altitude": 12.0,
        "speed": speed,
        "course": course,
        "address": None,
        "attributes": {"ignition": True},
    }


class FakeTracker:
    """In-process tracking server served through httpx.MockTransport."""

    def __init__(self):
        self.devices: list[dict] = []
        self.positions: list[dict] = []
        self.route: list[dict] = []
        self.summary: list[dict] = []
        self.trips: list[dict] = []
        self.fail_status = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"message": "upstream failure"})

        path = request.url.path
        params = request.url.params
        if path == "/api/devices":
            return httpx.Response(200, json=self.devices)
        if path.startswith("/api/devices/"):
            device_id = int(path.rsplit("/", 1)[1])
            for device in self.devices:
                if device["id"] == device_id:
                    return httpx.Response(200, json=device)
            return httpx.Response(404, json={"message": "Device not found"})
        if path == "/api/positions":
            if "from" in params:
                return httpx.Response(200, json=self.route)
            if "deviceId" in params:
                wanted = int(params["deviceId"])
                return httpx.Response(200, json=[p for p in self.positions if p["deviceId"] == wanted])
            return httpx.Response(200, json=self.positions)
        if path == "/api/reports/summary":
            return httpx.Response(200, json=self.summary)
        if path == "/api/reports/trips":
            return httpx.Response(200, json=self.trips)
        return httpx.Response(404, json={"message": "Not found"})

    def client(self) -> TrackingClient:
        return TrackingClient(transport=httpx.MockTransport(self.handler))

    @property
    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def tracker():
    """Fake upstream with four devices, each reporting its own position."""
    fake = FakeTracker()
    fake.devices = [
        make_device(101, position_id=1001),
        make_device(102, position_id=1002),
        make_device(205, position_id=2005),
        make_device(300, position_id=3000),
    ]
    fake.positions = [
        make_position(1001, 101),
        make_position(1002, 102, lat=33.58),
        make_position(2005, 205, lat=33.59),
        make_position(3000, 300, lat=33.60),
    ]
    return fake


# ============================================
# Database + app client
# ============================================

def build_test_engine():
    """Single shared in-memory SQLite connection."""
    return build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest_asyncio.fixture
async def db_maker():
    """Session factory on a fresh in-memory database."""
    engine = build_test_engine()
    await init_db(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(db_maker):
    """Async session on a fresh in-memory database (for service tests)."""
    async with db_maker() as session:
        yield session


class AppClient:
    """TestClient plus helpers that seed the database on the app's event loop."""

    def __init__(self, client: TestClient, maker, tracker: FakeTracker):
        self.http = client
        self.maker = maker
        self.tracker = tracker

    def run(self, func, *args):
        return self.http.portal.call(func, *args)

    def add_user(self, email: str, password: str = "secret123", role: str = "CLIENT",
                 device_ids=None, name: str = "Test User") -> User:
        async def _create():
            async with self.maker() as session:
                return await create_user(session, UserCreate(
                    email=email, password=password, name=name,
                    role=role, device_ids=device_ids or [],
                ))
        return self.run(_create)

    def session_for(self, user: User) -> str:
        async def _create():
            async with self.maker() as session:
                return await create_session(session, user.user_id)
        return self.run(_create)

    def login_as(self, user: User) -> None:
        """Put a valid session cookie on the client."""
        self.http.cookies.set("session", self.session_for(user))


@pytest.fixture
def app_client(tracker):
    """App with an isolated database and the fake tracking server."""
    engine = build_test_engine()
    maker = async_sessionmaker(engine, expire_on_commit=False)
    tracking_client = tracker.client()

    async def override_get_session():
        async with maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: maker
    app.dependency_overrides[get_tracking_client] = lambda: tracking_client

    with TestClient(app) as client:
        client.portal.call(init_db, engine)
        yield AppClient(client, maker, tracker)
        client.portal.call(tracking_client.close)
        client.portal.call(engine.dispose)

    app.dependency_overrides.clear()
