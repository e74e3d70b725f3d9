# tenancy.py - Organization scoping applied uniformly by every router
#
# Non-global callers only ever see and mutate rows owned by their own
# organization. Callers holding a global role see everything and may narrow
# by an explicit organization id.
import os
from typing import Optional, Sequence, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from errors import Forbidden, NotFound

GLOBAL_ROLES = frozenset(
    r.strip() for r in os.getenv("GLOBAL_ROLES", "agi_admin").split(",") if r.strip()
)


def is_global(user: CurrentUser) -> bool:
    return user.role in GLOBAL_ROLES


def scope_query(stmt, owner_column, user: CurrentUser, organization_id: Optional[str] = None):
    """Restrict ``stmt`` to the caller's organization unless they are global."""
    if not is_global(user):
        return stmt.where(owner_column == user.organization_id)
    if organization_id:
        return stmt.where(owner_column == organization_id)
    return stmt


def ensure_tenant_access(user: CurrentUser, organization_id: str, message: str = "Forbidden: resource belongs to another organization") -> None:
    if not is_global(user) and organization_id != user.organization_id:
        raise Forbidden(message)


async def get_owned_or_404(
    db: AsyncSession,
    model: Type,
    obj_id: str,
    user: CurrentUser,
    *,
    owner_attr: str = "organization_id",
    not_found: str = "Not found",
    forbidden: str = "Forbidden: resource belongs to another organization",
    options: Sequence = (),
):
    """Load ``model`` by id, then verify the caller's organization owns it."""
    stmt = select(model).where(model.id == obj_id)
    if options:
        stmt = stmt.options(*options)
    result = await db.execute(stmt)
    obj = result.scalar_one_or_none()
    if obj is None:
        raise NotFound(not_found)
    ensure_tenant_access(user, getattr(obj, owner_attr), forbidden)
    return obj
