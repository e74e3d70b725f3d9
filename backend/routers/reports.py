# routers/reports.py - Read-only reporting queries
from datetime import datetime, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session
from errors import ValidationFailed
from models import Equipment, EquipmentStatus, Module, Organization, AuditLog, User
from permissions import Permission
from tenancy import scope_query

router = APIRouter(prefix="/api/reports", tags=["Reports"])


class EquipmentReportRow(BaseModel):
    id: str
    name: Optional[str] = None
    status: str
    location: Optional[str] = None
    license_key: str
    last_seen: Optional[str] = None
    enrolled_at: Optional[str] = None
    organization: str
    module: str


class AuditReportRow(BaseModel):
    id: str
    timestamp: str
    action: str
    target_type: str
    target_id: str
    organization_id: str
    details: dict = {}
    user: Optional[dict] = None


class SummaryReport(BaseModel):
    total_organizations: int
    total_equipment: int
    online_equipment: int
    offline_equipment: int
    pending_equipment: int


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # Naive query parameters are taken as UTC, offsets converted to UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@router.get("/equipment", response_model=List[EquipmentReportRow])
async def equipment_report(
    organization_id: Optional[str] = None,
    location: Optional[str] = None,
    status: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Equipment joined with organization and module names"""
    stmt = (
        select(Equipment, Organization.name, Module.name)
        .join(Organization, Equipment.organization_id == Organization.id)
        .join(Module, Equipment.module_id == Module.id)
    )
    stmt = scope_query(stmt, Equipment.organization_id, user, organization_id)
    if location:
        stmt = stmt.where(Equipment.location == location)
    if status:
        try:
            stmt = stmt.where(Equipment.status == EquipmentStatus(status))
        except ValueError:
            raise ValidationFailed(f"Invalid status: {status}", "status")

    result = await db.execute(stmt.order_by(Organization.name, Equipment.created_at))
    return [
        EquipmentReportRow(
            id=e.id,
            name=e.name,
            status=e.status.value,
            location=e.location,
            license_key=e.license_key,
            last_seen=_iso(e.last_seen),
            enrolled_at=_iso(e.enrolled_at),
            organization=org_name,
            module=module_name.value,
        )
        for e, org_name, module_name in result.all()
    ]


@router.get("/audit", response_model=List[AuditReportRow])
async def audit_report(
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    user: CurrentUser = Depends(
        require_permission(Permission.MANAGE_USERS, Permission.MANAGE_ORGANIZATIONS)
    ),
    db: AsyncSession = Depends(get_db_session),
):
    """Audit trail, newest first"""
    start_date, end_date = _as_utc(start_date), _as_utc(end_date)
    if start_date and end_date and start_date > end_date:
        raise ValidationFailed("start_date must not be after end_date", "start_date")

    stmt = select(AuditLog, User.name, User.email).outerjoin(User, AuditLog.user_id == User.id)
    stmt = scope_query(stmt, AuditLog.organization_id, user)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if start_date:
        stmt = stmt.where(AuditLog.timestamp >= start_date)
    if end_date:
        stmt = stmt.where(AuditLog.timestamp <= end_date)

    result = await db.execute(stmt.order_by(AuditLog.timestamp.desc()))
    return [
        AuditReportRow(
            id=log.id,
            timestamp=_iso(log.timestamp),
            action=log.action,
            target_type=log.target_type.value,
            target_id=log.target_id,
            organization_id=log.organization_id,
            details=log.details or {},
            user={"id": log.user_id, "name": name, "email": email} if name else None,
        )
        for log, name, email in result.all()
    ]


@router.get("/summary", response_model=SummaryReport)
async def summary_report(
    user: CurrentUser = Depends(require_permission(Permission.VIEW_ALL_DATA)),
    db: AsyncSession = Depends(get_db_session),
):
    """System-wide counts"""
    total_orgs = (await db.execute(select(func.count(Organization.id)))).scalar() or 0

    result = await db.execute(
        select(Equipment.status, func.count(Equipment.id)).group_by(Equipment.status)
    )
    by_status = {status: count for status, count in result.all()}
    total = sum(by_status.values())
    online = by_status.get(EquipmentStatus.ONLINE, 0)

    return SummaryReport(
        total_organizations=total_orgs,
        total_equipment=total,
        online_equipment=online,
        # Everything not online, pending approval included
        offline_equipment=total - online,
        pending_equipment=by_status.get(EquipmentStatus.PENDING_APPROVAL, 0),
    )
