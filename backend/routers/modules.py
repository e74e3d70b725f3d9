# routers/modules.py - Module reference data (licensable equipment types)
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import audit_logger
from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session, commit_or_conflict
from models import Module, ModuleName, AuditAction, AuditTargetType
from permissions import Permission

router = APIRouter(prefix="/api/modules", tags=["Modules"])


class ModuleIn(BaseModel):
    name: ModuleName
    description: Optional[str] = None


class ModuleOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


def _module_to_out(m: Module) -> ModuleOut:
    return ModuleOut(id=m.id, name=m.name.value, description=m.description)


@router.get("", response_model=List[ModuleOut])
async def list_modules(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(select(Module))
    return sorted((_module_to_out(m) for m in result.scalars().all()), key=lambda m: m.name)


@router.post("", response_model=ModuleOut, status_code=201)
async def create_module(
    module_data: ModuleIn,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission(Permission.CREATE_MODULES)),
    db: AsyncSession = Depends(get_db_session),
):
    module = Module(name=module_data.name, description=module_data.description)
    db.add(module)
    await commit_or_conflict(db, "Module already exists")

    audit_logger.record(
        background_tasks,
        user_id=user.id,
        organization_id=user.organization_id,
        action=AuditAction.MODULE_CREATED,
        target_type=AuditTargetType.MODULE,
        target_id=module.id,
        details={"name": module.name.value},
    )
    return _module_to_out(module)
