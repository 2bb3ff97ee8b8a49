"""
Pydantic schemas for upstream records and request/response validation.
"""
from datetime import datetime
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ============ Upstream records ============

class UpstreamRecord(BaseModel):
    """
    Base for records mirrored from the tracking server.

    Upstream JSON uses camelCase; both camelCase and snake_case are accepted
    and unknown keys are ignored.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


DEVICE_STATUSES = ("online", "offline", "unknown")


class Device(UpstreamRecord):
    """Tracked vehicle as reported by the upstream server."""
    id: int
    name: str = ""
    unique_id: str = ""
    status: str = "unknown"
    disabled: bool = False
    last_update: Optional[datetime] = None
    position_id: Optional[int] = None  # Upstream's pointer to the latest position
    group_id: Optional[int] = None
    phone: Optional[str] = None
    model: Optional[str] = None
    contact: Optional[str] = None
    category: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        if isinstance(value, str) and value.lower() in DEVICE_STATUSES:
            return value.lower()
        return "unknown"

    @field_validator("attributes", mode="before")
    @classmethod
    def default_attributes(cls, value):
        return value or {}


class Position(UpstreamRecord):
    """Single GPS fix. Speed is in knots, course in degrees (0 = north)."""
    id: int
    device_id: int
    protocol: Optional[str] = None
    device_time: Optional[datetime] = None
    fix_time: Optional[datetime] = None
    server_time: Optional[datetime] = None
    outdated: bool = False
    valid: bool = True
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    altitude: float = 0.0
    speed: float = 0.0
    course: float = 0.0
    address: Optional[str] = None
    accuracy: Optional[float] = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("speed", "course", "altitude", mode="before")
    @classmethod
    def default_numbers(cls, value):
        return 0.0 if value is None else value

    @field_validator("attributes", mode="before")
    @classmethod
    def default_attributes(cls, value):
        return value or {}


class SummaryReport(UpstreamRecord):
    """Distance/speed summary for a device over a period (pass-through)."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    device_id: Optional[int] = None
    device_name: Optional[str] = None
    distance: float = 0.0  # meters
    average_speed: float = 0.0  # knots
    max_speed: float = 0.0  # knots
    spent_fuel: Optional[float] = None
    start_odometer: Optional[float] = None
    end_odometer: Optional[float] = None
    engine_hours: Optional[int] = None  # milliseconds


class TripReport(UpstreamRecord):
    """Single trip between two stops (pass-through)."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    device_id: Optional[int] = None
    device_name: Optional[str] = None
    max_speed: float = 0.0
    average_speed: float = 0.0
    distance: float = 0.0
    duration: int = 0  # milliseconds
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    start_lat: Optional[float] = None
    start_lon: Optional[float] = None
    end_lat: Optional[float] = None
    end_lon: Optional[float] = None
    start_address: Optional[str] = None
    end_address: Optional[str] = None


# ============ Auth ============

class LoginRequest(BaseModel):
    """Login credentials."""
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    """User details (never includes the password hash)."""
    user_id: str
    email: str
    name: str
    role: str
    active: bool
    device_ids: list[int]
    traccar_user_id: Optional[int] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SessionResponse(BaseModel):
    """Current session; user is null when not authenticated."""
    user: Optional[UserResponse] = None


# ============ Admin ============

# bcrypt only uses the first 72 bytes and rejects longer input
BCRYPT_MAX_PASSWORD_BYTES = 72


class UserCreate(BaseModel):
    """Request to create a dashboard user."""
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=6, max_length=BCRYPT_MAX_PASSWORD_BYTES)
    name: str = Field(..., min_length=1, max_length=100)
    role: Literal["ADMIN", "CLIENT"] = "CLIENT"
    device_ids: list[int] = Field(default_factory=list)
    traccar_user_id: Optional[int] = None

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES:
            raise ValueError(f"password cannot be longer than {BCRYPT_MAX_PASSWORD_BYTES} bytes")
        return value


class UserUpdate(BaseModel):
    """User update request. Only provided fields are updated."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    active: Optional[bool] = None
    device_ids: Optional[list[int]] = None


class UserListResponse(BaseModel):
    users: list[UserResponse]
