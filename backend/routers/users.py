# routers/users.py - Organization members and role assignment
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import audit_logger
from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session
from errors import Forbidden, NotFound
from models import User, Role, AuditAction, AuditTargetType
from permissions import Permission
from tenancy import scope_query, get_owned_or_404, is_global, GLOBAL_ROLES

router = APIRouter(prefix="/api/users", tags=["Users"])


class UserOut(BaseModel):
    id: str
    email: str
    name: str
    organization_id: str
    role_id: Optional[str] = None
    role: Optional[str] = None
    created_at: Optional[str] = None


class RoleAssignment(BaseModel):
    role_id: str = Field(..., min_length=1)


def _user_to_out(u: User, role: Optional[Role] = None) -> UserOut:
    return UserOut(
        id=u.id,
        email=u.email,
        name=u.name,
        organization_id=u.organization_id,
        role_id=u.role_id,
        role=role.name if role else None,
        created_at=u.created_at.isoformat() if u.created_at else None,
    )


@router.get("", response_model=List[UserOut])
async def list_users(
    organization_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Members of the caller's organization"""
    stmt = select(User).options(selectinload(User.role))
    stmt = scope_query(stmt, User.organization_id, user, organization_id)
    result = await db.execute(stmt.order_by(User.created_at.desc()))
    return [_user_to_out(u, u.role) for u in result.scalars().all()]


@router.put("/{user_id}/role", response_model=UserOut)
async def update_user_role(
    user_id: str,
    body: RoleAssignment,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_USERS)),
    db: AsyncSession = Depends(get_db_session),
):
    """Assign a role to another member of the caller's organization"""
    target = await get_owned_or_404(
        db, User, user_id, user,
        not_found="User to update not found",
        forbidden="Forbidden: You can only update users in your own organization.",
    )
    if target.id == user.id:
        raise Forbidden("Forbidden: You cannot change your own role.")

    new_role = await db.get(Role, body.role_id)
    if not new_role:
        raise NotFound("Target role not found")
    if new_role.name in GLOBAL_ROLES and not is_global(user):
        raise Forbidden(f"Forbidden: Cannot assign the {new_role.name} role.")

    previous_role_id = target.role_id
    target.role_id = new_role.id
    db.add(target)
    await db.commit()

    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=target.organization_id,
        action=AuditAction.USER_ROLE_CHANGED,
        target_type=AuditTargetType.USER,
        target_id=target.id,
        details={
            "updated_user_id": target.id,
            "previous_role_id": previous_role_id,
            "new_role_id": new_role.id,
        },
    )
    return _user_to_out(target, new_role)
