"""
Application configuration using pydantic-settings.
Loads from environment variables with sensible defaults.
"""
from functools import lru_cache
from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with production-safe defaults."""

    # Application
    app_name: str = "FleetWatch"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # Database (local user/session store)
    database_url: str = "sqlite+aiosqlite:///./fleetwatch.db"

    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Sessions
    session_cookie_name: str = "session"
    session_cookie_secure: bool = False  # Set to True behind HTTPS
    session_lifetime_days: int = 7

    # Upstream tracking server (Traccar REST API)
    upstream_base_url: str = "http://localhost:8082/api"
    upstream_username: str = "admin"
    upstream_password: str = "CHANGE-ME"
    upstream_timeout_s: float = 15.0

    # History queries
    max_history_days: int = 30

    # Live polling (seconds)
    map_poll_interval_s: float = 10.0
    dashboard_poll_interval_s: float = 30.0

    # Reconciliation tuning
    jump_threshold_m: float = 5000.0  # >= this distance snaps instead of animating
    min_motion_knots: float = 0.5  # > this speed starts dead-reckoning
    animation_duration_s: float = 2.0
    extrapolation_horizon_s: float = 8.0
    frame_interval_s: float = 0.1

    # SSE
    sse_keepalive_s: int = 15

    # Rate limiting (login attempts per minute per client)
    rate_limit_login: int = 10

    # Bootstrap administrator (created at startup if missing)
    bootstrap_admin_email: str = ""
    bootstrap_admin_password: str = ""
    bootstrap_admin_name: str = "Administrator"

    @model_validator(mode='after')
    def check_production_security(self):
        """Refuse placeholder upstream credentials outside debug mode."""
        if not self.debug and "CHANGE-ME" in self.upstream_password:
            raise ValueError(
                "SECURITY ERROR: Must set UPSTREAM_PASSWORD environment variable for production!"
            )
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
