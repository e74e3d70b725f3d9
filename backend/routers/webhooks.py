# routers/webhooks.py - Device event ingestion
#
# Once the API key and the body are valid, the endpoint always answers 200:
# the sender must not learn which license keys exist, and a failure here
# must not trigger retry storms. Outcomes are recorded in the server log.
import logging
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_device_key
from database import get_db_session
from models import Equipment, EquipmentStatus, utcnow

logger = logging.getLogger("medequip.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

EVENT_STATUS = {
    "equipment_online": EquipmentStatus.ONLINE,
    "equipment_offline": EquipmentStatus.OFFLINE,
}

RECEIVED = {"msg": "Event received"}


class WebhookEvent(BaseModel):
    event: Literal["equipment_online", "equipment_offline"]
    license_key: str = Field(..., min_length=1)


@router.post("/events")
async def handle_event(
    body: WebhookEvent,
    _: bool = Depends(require_device_key),
    db: AsyncSession = Depends(get_db_session),
):
    license_key = body.license_key.strip()
    try:
        result = await db.execute(select(Equipment).where(Equipment.license_key == license_key))
        equipment = result.scalar_one_or_none()

        if equipment is None:
            logger.warning(f"Webhook received event for unknown license key: {license_key}")
            return RECEIVED

        if equipment.status == EquipmentStatus.PENDING_APPROVAL:
            logger.warning(
                f"Webhook {body.event} ignored for {license_key}: equipment is pending approval"
            )
            return RECEIVED

        equipment.status = EVENT_STATUS[body.event]
        equipment.last_seen = utcnow()
        db.add(equipment)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Webhook processing error for {license_key}: {e}", exc_info=True)
        return {"msg": "Event received, but internal error occurred"}

    logger.info(f"Webhook processed: {body.event} for license key {license_key}")
    return {"msg": "Event processed successfully"}
