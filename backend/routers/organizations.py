# routers/organizations.py - Organization (tenant) management
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import audit_logger
from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session, commit_or_conflict
from errors import NotFound
from models import Organization, AuditAction, AuditTargetType
from permissions import Permission
from tenancy import scope_query, get_owned_or_404

router = APIRouter(prefix="/api/organizations", tags=["Organizations"])

NAME_TAKEN = "Organization already exists"


# --- Schemas ---

def _stripped(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("must not be blank")
    return v


class OrgOut(BaseModel):
    id: str
    name: str
    address: str
    locations: List[str] = []
    branding: Dict[str, Any] = {}
    subscription_id: Optional[str] = None
    created_at: str


class OrgDetailOut(OrgOut):
    users: List[Dict[str, str]] = []


class OrgCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    address: str = Field(..., min_length=1)
    locations: List[str] = Field(default_factory=list)
    branding: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", "address")
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _stripped(v)


class OrgUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    address: Optional[str] = Field(default=None, min_length=1)
    locations: Optional[List[str]] = None
    branding: Optional[Dict[str, Any]] = None

    @field_validator("name", "address")
    @classmethod
    def not_blank(cls, v: Optional[str]) -> Optional[str]:
        return v if v is None else _stripped(v)


# --- Helpers ---

def _org_to_out(org: Organization) -> OrgOut:
    return OrgOut(
        id=org.id,
        name=org.name,
        address=org.address,
        locations=org.locations or [],
        branding=org.branding or {},
        subscription_id=org.subscription_id,
        created_at=org.created_at.isoformat() if org.created_at else "",
    )


def _audit_org(background_tasks, user: CurrentUser, org: Organization, action, details):
    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=org.id,
        action=action,
        target_type=AuditTargetType.ORGANIZATION,
        target_id=org.id,
        details=details,
    )


# --- Endpoints ---

@router.post("", response_model=OrgOut, status_code=201)
async def create_organization(
    org_data: OrgCreate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_ORGANIZATIONS)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a new organization"""
    org = Organization(
        name=org_data.name,
        address=org_data.address,
        locations=org_data.locations,
        branding=org_data.branding,
    )
    db.add(org)
    await commit_or_conflict(db, NAME_TAKEN)

    _audit_org(background_tasks, user, org, AuditAction.ORG_CREATED, {"name": org.name})
    return _org_to_out(org)


@router.get("", response_model=List[OrgOut])
async def list_organizations(
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_ORGANIZATIONS)),
    db: AsyncSession = Depends(get_db_session),
):
    """List organizations (global roles see all, others their own)"""
    stmt = scope_query(select(Organization), Organization.id, user)
    result = await db.execute(stmt.order_by(Organization.created_at.desc()))
    return [_org_to_out(o) for o in result.scalars().all()]


@router.get("/my/branding")
async def get_my_branding(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Branding of the caller's organization"""
    org = await db.get(Organization, user.organization_id)
    if not org:
        raise NotFound("Organization not found for this user")
    return org.branding or {}


@router.get("/{org_id}", response_model=OrgDetailOut)
async def get_organization(
    org_id: str,
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_ORGANIZATIONS)),
    db: AsyncSession = Depends(get_db_session),
):
    """Organization with its members"""
    org = await get_owned_or_404(
        db, Organization, org_id, user,
        owner_attr="id",
        not_found="Organization not found",
        forbidden="Cannot view other organizations",
        options=[selectinload(Organization.users)],
    )
    return OrgDetailOut(
        **_org_to_out(org).model_dump(),
        users=[{"id": u.id, "name": u.name, "email": u.email} for u in org.users],
    )


@router.put("/{org_id}", response_model=OrgOut)
async def update_organization(
    org_id: str,
    update: OrgUpdate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_ORGANIZATIONS)),
    db: AsyncSession = Depends(get_db_session),
):
    """Partially update an organization"""
    org = await get_owned_or_404(
        db, Organization, org_id, user,
        owner_attr="id",
        not_found="Organization not found",
        forbidden="Cannot update other organizations",
    )

    changed = update.model_dump(exclude_none=True)
    for field, value in changed.items():
        setattr(org, field, value)

    db.add(org)
    await commit_or_conflict(db, NAME_TAKEN)

    _audit_org(background_tasks, user, org, AuditAction.ORG_UPDATED, {"fields": sorted(changed)})
    return _org_to_out(org)
