"""
Centralized authentication and authorization module.

Provides:
- login(): verify email/password against the local user store
- create_session() / resolve_session() / revoke_session(): opaque session tokens
- get_current_user() / require_role(): FastAPI dependencies for route-level RBAC
- Role hierarchy: client < admin

Sessions have an absolute expiry and are never extended. Expired sessions
are deleted lazily when presented.
"""
import secrets
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Optional

import bcrypt
import structlog
from fastapi import Depends, Request
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetwatch.config import get_settings
from fleetwatch.database import get_session
from fleetwatch.exceptions import Forbidden, InvalidCredentials, Unauthorized
from fleetwatch.models import User, UserSession

settings = get_settings()
logger = structlog.get_logger("auth")

# 32 bytes -> 256 bits of entropy
SESSION_TOKEN_BYTES = 32


class Role(IntEnum):
    """
    Role hierarchy with numeric values for comparison.
    Higher value = more permissions.
    """
    CLIENT = 1   # Sees only the devices on their allow-list
    ADMIN = 2    # Sees every device, manages users


def role_of(user: User) -> Role:
    """Role enum for a user row; unknown role strings get the lowest role."""
    try:
        return Role[user.role]
    except KeyError:
        return Role.CLIENT


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on read; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================
# Passwords
# ============================================

def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        # Malformed stored hash, or a password bcrypt refuses
        return False


# Compared against when the email is unknown so both failure paths cost a bcrypt check
_DUMMY_HASH = hash_password(secrets.token_hex(8))


async def login(db: AsyncSession, email: str, password: str) -> User:
    """
    Verify credentials for an active user.

    Raises InvalidCredentials with the same message whether the email is
    unknown, the account is inactive, or the password is wrong. Does not
    create a session.
    """
    result = await db.execute(
        select(User).where(User.email == email, User.active.is_(True))
    )
    user = result.scalar_one_or_none()

    if user is None:
        verify_password(password, _DUMMY_HASH)
        logger.info("Login failed", reason="unknown_or_inactive")
        raise InvalidCredentials()

    if not verify_password(password, user.password_hash):
        logger.info("Login failed", reason="bad_password", user_id=user.user_id)
        raise InvalidCredentials()

    return user


# ============================================
# Sessions
# ============================================

async def create_session(
    db: AsyncSession,
    user_id: str,
    now: Optional[datetime] = None,
) -> str:
    """Persist a new session for a user and return its token."""
    now = now or datetime.now(timezone.utc)
    token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
    db.add(UserSession(
        token=token,
        user_id=user_id,
        created_at=now,
        expires_at=now + timedelta(days=settings.session_lifetime_days),
    ))
    await db.commit()
    return token


async def resolve_session(
    db: AsyncSession,
    token: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[User]:
    """
    Resolve a session token to its active user.

    Returns None when the token is absent, unknown, expired (the session is
    deleted), or belongs to a missing or deactivated user (the session is
    left in place).
    """
    if not token:
        return None

    session_row = await db.get(UserSession, token)
    if session_row is None:
        return None

    now = now or datetime.now(timezone.utc)
    if now >= as_utc(session_row.expires_at):
        user_id = session_row.user_id
        await db.delete(session_row)
        await db.commit()
        logger.info("Session expired", user_id=user_id)
        return None

    user = await db.get(User, session_row.user_id)
    if user is None or not user.active:
        return None
    return user


async def revoke_session(db: AsyncSession, token: Optional[str]) -> None:
    """Delete a session. Unknown tokens are ignored."""
    if not token:
        return
    await db.execute(delete(UserSession).where(UserSession.token == token))
    await db.commit()


async def revoke_user_sessions(db: AsyncSession, user_id: str) -> None:
    """Delete every session belonging to a user."""
    await db.execute(delete(UserSession).where(UserSession.user_id == user_id))
    await db.commit()


# ============================================
# FastAPI dependencies
# ============================================

def get_session_token(request: Request) -> Optional[str]:
    """Extract the session token from the cookie, or a Bearer header."""
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        return token

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def get_optional_user(
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> Optional[User]:
    """Current user, or None when the request is not authenticated."""
    return await resolve_session(db, get_session_token(request))


async def get_current_user(
    user: Optional[User] = Depends(get_optional_user),
) -> User:
    """Current user; raises Unauthorized when there is no valid session."""
    if user is None:
        raise Unauthorized()
    return user


def require_role(minimum_role: Role):
    """
    FastAPI dependency factory that requires minimum role.

    Usage:
        @router.get("/admin/users")
        async def list_users(user: User = Depends(require_role(Role.ADMIN))):
            ...

    Raises 401 if no session, 403 if insufficient role.
    """
    async def dependency(
        user: User = Depends(get_current_user),
    ) -> User:
        if role_of(user) < minimum_role:
            raise Forbidden(f"Insufficient permissions. Required: {minimum_role.name.lower()}")
        return user

    return dependency


# Convenience dependency for admin-only routes
require_admin = require_role(Role.ADMIN)
