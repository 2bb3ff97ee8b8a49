"""
Session authentication routes.

Login sets an http-only session cookie holding an opaque token; logout
revokes it. Failed logins get one generic message whether the email is
unknown or the password is wrong.
"""
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, Response
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetwatch.config import get_settings
from fleetwatch.database import get_session
from fleetwatch.models import User
from fleetwatch.schemas import LoginRequest, SessionResponse, UserResponse
from fleetwatch.services import auth as auth_service

settings = get_settings()
router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = structlog.get_logger("routes.auth")

# Login attempts are limited per client address
limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
        max_age=settings.session_lifetime_days * 24 * 3600,
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
    )


@router.post("/login", response_model=SessionResponse)
@limiter.limit(f"{settings.rate_limit_login}/minute")
async def login(
    request: Request,  # Required for rate limiter
    response: Response,
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_session),
):
    """Verify credentials, create a session and set the session cookie."""
    user = await auth_service.login(db, credentials.email, credentials.password)
    token = await auth_service.create_session(db, user.user_id)
    _set_session_cookie(response, token)
    logger.info("Login succeeded", user_id=user.user_id)
    return SessionResponse(user=UserResponse.model_validate(user))


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
):
    """Revoke the current session and clear the cookie."""
    token = auth_service.get_session_token(request)
    await auth_service.revoke_session(db, token)
    _clear_session_cookie(response)
    return {"success": True}


@router.get("/session", response_model=SessionResponse)
async def current_session(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
):
    """
    Current user, or {"user": null}.
    Never fails on a missing or invalid session; a stale cookie is cleared.
    """
    token = auth_service.get_session_token(request)
    if not token:
        return SessionResponse(user=None)

    user: Optional[User] = None
    try:
        user = await auth_service.resolve_session(db, token)
    except SQLAlchemyError:
        logger.exception("Session lookup failed")

    if user is None:
        _clear_session_cookie(response)
        return SessionResponse(user=None)
    return SessionResponse(user=UserResponse.model_validate(user))
