"""
User store operations shared by the admin API and the bootstrap step.
"""
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetwatch.exceptions import Conflict
from fleetwatch.models import User, generate_id
from fleetwatch.schemas import UserCreate
from fleetwatch.services.auth import hash_password

logger = structlog.get_logger("users")


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def create_user(
    db: AsyncSession,
    data: UserCreate,
    created_by: Optional[str] = None,
) -> User:
    """Create a user, rejecting duplicate emails."""
    if await get_user_by_email(db, data.email):
        raise Conflict("User with this email already exists")

    user = User(
        user_id=generate_id("usr"),
        email=data.email,
        password_hash=hash_password(data.password),
        name=data.name,
        role=data.role,
        active=True,
        device_ids=list(dict.fromkeys(data.device_ids)),  # Dedupe, keep order
        traccar_user_id=data.traccar_user_id,
        created_by=created_by,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def ensure_admin(db: AsyncSession, email: str, password: str, name: str) -> Optional[User]:
    """
    Create the bootstrap administrator if no user has this email.
    Returns the new user, or None if it already existed.
    """
    if await get_user_by_email(db, email):
        return None
    user = await create_user(db, UserCreate(email=email, password=password, name=name, role="ADMIN"))
    logger.info("Bootstrap admin created", user_id=user.user_id, email=email)
    return user
