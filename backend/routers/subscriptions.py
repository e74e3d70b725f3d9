# routers/subscriptions.py - One subscription per organization
#
# POST is an idempotent upsert executed in a single transaction:
#   - lock/read the organization's subscription
#   - update it in place, or create it and link it onto the organization
#   - a creator that loses the unique race on organization_id retries as an update
import logging
from datetime import datetime
from typing import Optional, List, Dict

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from audit import audit_logger
from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session
from errors import Conflict, NotFound, ValidationFailed
from models import (
    Subscription, SubscriptionModule, Organization, Module,
    AuditAction, AuditTargetType, utcnow,
)
from permissions import Permission
from tenancy import scope_query, ensure_tenant_access

logger = logging.getLogger("medequip.subscriptions")

router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])

UPSERT_ATTEMPTS = 2


# --- Schemas ---

class ModuleQuantity(BaseModel):
    module_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class SubscriptionIn(BaseModel):
    organization_id: str = Field(..., min_length=1)
    modules: List[ModuleQuantity] = Field(..., min_length=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class SubscriptionItemOut(BaseModel):
    module_id: str
    module: Optional[str] = None
    quantity: int


class SubscriptionOut(BaseModel):
    id: str
    organization_id: str
    modules: List[SubscriptionItemOut]
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_active: bool


# --- Helpers ---

def _subscription_to_out(sub: Subscription, module_names: Dict[str, str]) -> SubscriptionOut:
    return SubscriptionOut(
        id=sub.id,
        organization_id=sub.organization_id,
        modules=[
            SubscriptionItemOut(
                module_id=item.module_id,
                module=module_names.get(item.module_id),
                quantity=item.quantity,
            )
            for item in sub.items
        ],
        start_date=sub.start_date.isoformat() if sub.start_date else None,
        end_date=sub.end_date.isoformat() if sub.end_date else None,
        is_active=sub.is_active,
    )


async def _module_names(db: AsyncSession, module_ids: List[str]) -> Dict[str, str]:
    result = await db.execute(select(Module).where(Module.id.in_(module_ids)))
    return {m.id: m.name.value for m in result.scalars().all()}


async def _names_for(db: AsyncSession, subs: List[Subscription]) -> Dict[str, str]:
    ids = {item.module_id for s in subs for item in s.items}
    return await _module_names(db, list(ids)) if ids else {}


async def _apply_subscription(db: AsyncSession, data: SubscriptionIn, org_id: str):
    """Write the subscription and its organization link, then commit."""
    org = await db.get(Organization, org_id)
    if not org:
        raise NotFound("Organization not found")

    result = await db.execute(
        select(Subscription)
        .where(Subscription.organization_id == org_id)
        .with_for_update()
    )
    sub = result.scalar_one_or_none()
    created = sub is None
    if created:
        sub = Subscription(
            organization_id=org_id,
            start_date=data.start_date or utcnow(),
            is_active=True if data.is_active is None else data.is_active,
        )
        db.add(sub)
    else:
        if data.start_date is not None:
            sub.start_date = data.start_date
        if data.is_active is not None:
            sub.is_active = data.is_active

    if data.end_date is not None:
        sub.end_date = data.end_date
    sub.items = [
        SubscriptionModule(module_id=m.module_id, quantity=m.quantity)
        for m in data.modules
    ]

    await db.flush()
    org.subscription_id = sub.id
    await db.commit()
    return sub, created


# --- Endpoints ---

@router.post("", response_model=SubscriptionOut)
async def upsert_subscription(
    data: SubscriptionIn,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_SUBSCRIPTIONS)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create or replace the organization's subscription"""
    module_ids = [m.module_id for m in data.modules]
    if len(set(module_ids)) != len(module_ids):
        raise ValidationFailed("Each module may appear only once", "modules")

    module_names = await _module_names(db, module_ids)
    missing = [mid for mid in module_ids if mid not in module_names]
    if missing:
        raise NotFound(f"Module not found: {', '.join(missing)}")

    for _ in range(UPSERT_ATTEMPTS):
        try:
            sub, created = await _apply_subscription(db, data, data.organization_id)
            break
        except IntegrityError:
            await db.rollback()
            logger.info(
                f"Concurrent subscription write for organization {data.organization_id}, retrying"
            )
    else:
        raise Conflict("Subscription was modified concurrently, please retry")

    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=sub.organization_id,
        action=AuditAction.SUBSCRIPTION_CREATED if created else AuditAction.SUBSCRIPTION_UPDATED,
        target_type=AuditTargetType.SUBSCRIPTION,
        target_id=sub.id,
        details={"modules": [m.model_dump() for m in data.modules]},
    )
    return _subscription_to_out(sub, module_names)


@router.get("", response_model=List[SubscriptionOut])
async def list_subscriptions(
    user: CurrentUser = Depends(require_permission(Permission.MANAGE_SUBSCRIPTIONS)),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = scope_query(select(Subscription), Subscription.organization_id, user)
    result = await db.execute(stmt.order_by(Subscription.created_at.desc()))
    subs = list(result.scalars().all())
    module_names = await _names_for(db, subs)
    return [_subscription_to_out(s, module_names) for s in subs]


@router.get("/organization/{org_id}", response_model=SubscriptionOut)
async def get_organization_subscription(
    org_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ensure_tenant_access(user, org_id, "Forbidden: Cannot view another organization's subscription")

    result = await db.execute(select(Subscription).where(Subscription.organization_id == org_id))
    sub = result.scalar_one_or_none()
    if not sub:
        raise NotFound("Subscription not found for this organization")

    module_names = await _names_for(db, [sub])
    return _subscription_to_out(sub, module_names)
