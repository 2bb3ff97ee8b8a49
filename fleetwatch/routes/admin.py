"""
FleetWatch - Admin API Routes

User management for administrators:
- List and create dashboard users
- Update name, active flag and device allow-list
- Delete users (never one's own account)

All endpoints require an ADMIN session.
"""
from fastapi import APIRouter, Depends, HTTPException
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetwatch.database import get_session
from fleetwatch.exceptions import NotFound
from fleetwatch.models import User
from fleetwatch.schemas import UserCreate, UserListResponse, UserResponse, UserUpdate
from fleetwatch.services.auth import require_admin, revoke_user_sessions
from fleetwatch.services.users import create_user

# Router-level RBAC - all endpoints require admin auth
router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)

admin_logger = structlog.get_logger("admin")


async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


@router.get("/users", response_model=UserListResponse)
async def list_users(db: AsyncSession = Depends(get_session)):
    """All users, newest first."""
    result = await db.execute(select(User).order_by(User.created_at.desc()))
    return UserListResponse(users=[UserResponse.model_validate(u) for u in result.scalars().all()])


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user_endpoint(
    data: UserCreate,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """Create a dashboard user."""
    user = await create_user(db, data, created_by=admin.user_id)
    admin_logger.info("User created", user_id=user.user_id, role=user.role, by=admin.user_id)
    return user


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    data: UserUpdate,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """Update name, active flag or allow-list. Only provided fields change."""
    user = await _get_user_or_404(db, user_id)

    update_data = data.model_dump(exclude_unset=True)
    if update_data.get("name") is not None:
        user.name = update_data["name"]
    if update_data.get("active") is not None:
        user.active = update_data["active"]
    if update_data.get("device_ids") is not None:
        user.device_ids = list(dict.fromkeys(update_data["device_ids"]))

    await db.commit()
    await db.refresh(user)
    admin_logger.info("User updated", user_id=user_id, fields=sorted(update_data), by=admin.user_id)
    return user


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """Hard-delete a user and all of their sessions."""
    if admin.user_id == user_id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")

    user = await _get_user_or_404(db, user_id)
    await revoke_user_sessions(db, user_id)
    await db.delete(user)
    await db.commit()
    admin_logger.info("User deleted", user_id=user_id, by=admin.user_id)
    return {"success": True}
