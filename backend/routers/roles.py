# routers/roles.py - Role definitions
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import audit_logger
from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session, commit_or_conflict
from errors import NotFound, ValidationFailed
from models import Role, AuditAction, AuditTargetType
from permissions import Permission, unknown_permissions

router = APIRouter(prefix="/api/roles", tags=["Roles"])

NAME_TAKEN = "Role already exists"


class RoleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: List[str]

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v


class RoleOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[str] = []


def _role_to_out(role: Role) -> RoleOut:
    return RoleOut(
        id=role.id,
        name=role.name,
        description=role.description,
        permissions=list(role.permissions or []),
    )


def _validated_permissions(permissions: List[str]) -> List[str]:
    unknown = unknown_permissions(permissions)
    if unknown:
        raise ValidationFailed(f"Unknown permissions: {', '.join(unknown)}", "permissions")
    # de-duplicate, keep order
    return list(dict.fromkeys(permissions))


@router.get("", response_model=List[RoleOut])
async def list_roles(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(select(Role).order_by(Role.name))
    return [_role_to_out(r) for r in result.scalars().all()]


@router.post("", response_model=RoleOut, status_code=201)
async def create_role(
    role_data: RoleIn,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a role; every permission must be in the registry"""
    role = Role(
        name=role_data.name,
        description=role_data.description,
        permissions=_validated_permissions(role_data.permissions),
    )
    db.add(role)
    await commit_or_conflict(db, NAME_TAKEN)

    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=user.organization_id,
        action=AuditAction.ROLE_CREATED,
        target_type=AuditTargetType.ROLE,
        target_id=role.id,
        details={"name": role.name, "permissions": role.permissions},
    )
    return _role_to_out(role)


@router.put("/{role_id}", response_model=RoleOut)
async def update_role(
    role_id: str,
    role_data: RoleIn,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
):
    role = await db.get(Role, role_id)
    if not role:
        raise NotFound("Role not found")

    permissions = _validated_permissions(role_data.permissions)
    previous = {"name": role.name, "permissions": list(role.permissions or [])}

    role.name = role_data.name
    role.description = role_data.description
    role.permissions = permissions
    db.add(role)
    await commit_or_conflict(db, NAME_TAKEN)

    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=user.organization_id,
        action=AuditAction.ROLE_UPDATED,
        target_type=AuditTargetType.ROLE,
        target_id=role.id,
        details={"previous": previous, "name": role.name, "permissions": permissions},
    )
    return _role_to_out(role)
