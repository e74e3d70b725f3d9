# routers/equipment.py - Equipment enrollment, discovery and lifecycle
#
# Lifecycle: pending_approval → offline → {online ⇄ offline}
#   - discover (device agent)   creates in pending_approval
#   - enroll (user)             creates in offline
#   - approve                   pending_approval → offline
#   - status update / webhook   online ⇄ offline only
import logging
from typing import Optional, List, Literal

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import audit_logger
from auth import get_current_user, require_permission, require_device_key, CurrentUser
from database import get_db_session, commit_or_conflict
from errors import NotFound, InvalidState, ValidationFailed
from models import (
    Equipment, EquipmentStatus, Module, Organization,
    AuditAction, AuditTargetType, utcnow,
)
from permissions import Permission
from tenancy import scope_query, get_owned_or_404, is_global

logger = logging.getLogger("medequip.equipment")

router = APIRouter(prefix="/api/equipment", tags=["Equipment"])

LICENSE_KEY_TAKEN = "Equipment with this license key already exists"


# --- Schemas ---

def _clean_license_key(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("License key is required")
    return v


class _LicenseKeyed(BaseModel):
    license_key: str = Field(..., min_length=1, max_length=200)

    @field_validator("license_key")
    @classmethod
    def strip_license_key(cls, v: str) -> str:
        return _clean_license_key(v)


class EquipmentEnroll(_LicenseKeyed):
    module_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    location: Optional[str] = None


class EquipmentDiscover(EquipmentEnroll):
    organization_id: str = Field(..., min_length=1)


class EquipmentUpdate(BaseModel):
    license_key: Optional[str] = Field(default=None, min_length=1, max_length=200)
    module_id: Optional[str] = None
    name: Optional[str] = None
    location: Optional[str] = None

    @field_validator("license_key")
    @classmethod
    def strip_license_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _clean_license_key(v)


class StatusUpdate(BaseModel):
    status: Literal["online", "offline"]


class EquipmentOut(BaseModel):
    id: str
    organization_id: str
    module_id: str
    module: Optional[str] = None
    license_key: str
    name: Optional[str] = None
    location: Optional[str] = None
    status: str
    enrolled_at: Optional[str] = None
    last_seen: Optional[str] = None


# --- Helpers ---

def _equipment_to_out(e: Equipment, module: Optional[Module] = None) -> EquipmentOut:
    return EquipmentOut(
        id=e.id,
        organization_id=e.organization_id,
        module_id=e.module_id,
        module=module.name.value if module else None,
        license_key=e.license_key,
        name=e.name,
        location=e.location,
        status=e.status.value if isinstance(e.status, EquipmentStatus) else e.status,
        enrolled_at=e.enrolled_at.isoformat() if e.enrolled_at else None,
        last_seen=e.last_seen.isoformat() if e.last_seen else None,
    )


async def _get_module_or_404(db: AsyncSession, module_id: str) -> Module:
    module = await db.get(Module, module_id)
    if not module:
        raise NotFound("Module not found")
    return module


async def _get_equipment(db: AsyncSession, equipment_id: str, user: CurrentUser) -> Equipment:
    return await get_owned_or_404(
        db, Equipment, equipment_id, user,
        not_found="Equipment not found",
        forbidden="User not authorized to update this equipment",
        options=[selectinload(Equipment.module)],
    )


# --- Endpoints ---

@router.post("", response_model=EquipmentOut, status_code=201)
async def enroll_equipment(
    body: EquipmentEnroll,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.ENROLL_EQUIPMENT)),
    db: AsyncSession = Depends(get_db_session),
):
    """Enroll equipment into the caller's organization (starts offline)"""
    module = await _get_module_or_404(db, body.module_id)

    equipment = Equipment(
        organization_id=user.organization_id,
        module_id=module.id,
        license_key=body.license_key,
        name=body.name,
        location=body.location,
        status=EquipmentStatus.OFFLINE,
        enrolled_at=utcnow(),
    )
    db.add(equipment)
    await commit_or_conflict(db, LICENSE_KEY_TAKEN)

    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=user.organization_id,
        action=AuditAction.EQUIPMENT_ENROLLED,
        target_type=AuditTargetType.EQUIPMENT,
        target_id=equipment.id,
        details={"license_key": equipment.license_key, "module_id": module.id},
    )
    return _equipment_to_out(equipment, module)


@router.post("/discover", response_model=EquipmentOut, status_code=201)
async def discover_equipment(
    body: EquipmentDiscover,
    _: bool = Depends(require_device_key),
    db: AsyncSession = Depends(get_db_session),
):
    """Register a device reported by the discovery agent, pending approval"""
    org = await db.get(Organization, body.organization_id)
    if not org:
        raise NotFound("Organization not found")
    module = await _get_module_or_404(db, body.module_id)

    equipment = Equipment(
        organization_id=org.id,
        module_id=module.id,
        license_key=body.license_key,
        name=body.name,
        location=body.location,
        status=EquipmentStatus.PENDING_APPROVAL,
    )
    db.add(equipment)
    await commit_or_conflict(db, LICENSE_KEY_TAKEN)

    logger.info(f"Discovered equipment {equipment.license_key} for organization {org.id}")
    return _equipment_to_out(equipment, module)


@router.get("", response_model=List[EquipmentOut])
async def list_equipment(
    status: Optional[str] = None,
    organization_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List equipment of the caller's organization (global roles: all)"""
    stmt = select(Equipment).options(selectinload(Equipment.module))
    stmt = scope_query(stmt, Equipment.organization_id, user, organization_id)
    if status:
        try:
            stmt = stmt.where(Equipment.status == EquipmentStatus(status))
        except ValueError:
            raise ValidationFailed(f"Invalid status: {status}", "status")

    result = await db.execute(stmt.order_by(Equipment.created_at.desc()))
    return [_equipment_to_out(e, e.module) for e in result.scalars().all()]


@router.get("/{equipment_id}", response_model=EquipmentOut)
async def get_equipment(
    equipment_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    equipment = await _get_equipment(db, equipment_id, user)
    return _equipment_to_out(equipment, equipment.module)


@router.put("/{equipment_id}", response_model=EquipmentOut)
async def update_equipment(
    equipment_id: str,
    body: EquipmentUpdate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.ENROLL_EQUIPMENT)),
    db: AsyncSession = Depends(get_db_session),
):
    """Update equipment fields; a new license key must still be unique"""
    equipment = await _get_equipment(db, equipment_id, user)
    module = equipment.module
    changes = {}

    if body.license_key is not None and body.license_key != equipment.license_key:
        changes["license_key"] = {"from": equipment.license_key, "to": body.license_key}
        equipment.license_key = body.license_key
    if body.module_id is not None and body.module_id != equipment.module_id:
        module = await _get_module_or_404(db, body.module_id)
        changes["module_id"] = {"from": equipment.module_id, "to": module.id}
        equipment.module_id = module.id
    if body.name is not None:
        equipment.name = body.name
    if body.location is not None:
        equipment.location = body.location

    db.add(equipment)
    await commit_or_conflict(db, LICENSE_KEY_TAKEN)

    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=equipment.organization_id,
        action=AuditAction.EQUIPMENT_UPDATED,
        target_type=AuditTargetType.EQUIPMENT,
        target_id=equipment.id,
        details=changes,
    )
    return _equipment_to_out(equipment, module)


@router.patch("/status/{equipment_id}", response_model=EquipmentOut)
async def update_equipment_status(
    equipment_id: str,
    body: StatusUpdate,
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_EQUIPMENT_STATUS)),
    db: AsyncSession = Depends(get_db_session),
):
    """Toggle equipment between online and offline"""
    equipment = await _get_equipment(db, equipment_id, user)
    if equipment.status == EquipmentStatus.PENDING_APPROVAL:
        raise InvalidState("Equipment is pending approval")

    equipment.status = EquipmentStatus(body.status)
    equipment.last_seen = utcnow()
    db.add(equipment)
    await db.commit()
    return _equipment_to_out(equipment, equipment.module)


@router.patch("/{equipment_id}/approve", response_model=EquipmentOut)
async def approve_equipment(
    equipment_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.ENROLL_EQUIPMENT)),
    db: AsyncSession = Depends(get_db_session),
):
    """Approve discovered equipment: pending_approval → offline"""
    equipment = await _get_equipment(db, equipment_id, user)
    if equipment.status != EquipmentStatus.PENDING_APPROVAL:
        raise InvalidState(
            f"Equipment cannot be approved from status '{equipment.status.value}'"
        )

    # Conditional write: a concurrent approval loses instead of re-stamping
    result = await db.execute(
        update(Equipment)
        .where(
            Equipment.id == equipment.id,
            Equipment.status == EquipmentStatus.PENDING_APPROVAL,
        )
        .values(status=EquipmentStatus.OFFLINE, enrolled_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise InvalidState("Equipment has already been approved")
    await db.commit()
    await db.refresh(equipment, attribute_names=["status", "enrolled_at"])

    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=equipment.organization_id,
        action=AuditAction.EQUIPMENT_APPROVED,
        target_type=AuditTargetType.EQUIPMENT,
        target_id=equipment.id,
        details={"license_key": equipment.license_key, "global_approval": is_global(user)},
    )
    return _equipment_to_out(equipment, equipment.module)
