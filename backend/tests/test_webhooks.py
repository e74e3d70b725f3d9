# tests/test_webhooks.py - Device event ingestion tests
import logging

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import Equipment, EquipmentStatus
from tests.conftest import make_equipment, DEVICE_HEADERS


@pytest.mark.asyncio
async def test_online_event(client: AsyncClient, test_org, ecg_module, db_session):
    equipment = await make_equipment(db_session, test_org, ecg_module, "WH-001")
    res = await client.post(
        "/api/webhooks/events",
        json={"event": "equipment_online", "license_key": "WH-001"},
        headers=DEVICE_HEADERS,
    )
    assert res.status_code == 200
    assert res.json() == {"msg": "Event processed successfully"}

    result = await db_session.execute(
        select(Equipment.status, Equipment.last_seen).where(Equipment.id == equipment.id)
    )
    status, last_seen = result.one()
    assert status == EquipmentStatus.ONLINE
    assert last_seen is not None


@pytest.mark.asyncio
async def test_offline_event(client: AsyncClient, test_org, ecg_module, db_session):
    await make_equipment(db_session, test_org, ecg_module, "WH-002", status=EquipmentStatus.ONLINE)
    res = await client.post(
        "/api/webhooks/events",
        json={"event": "equipment_offline", "license_key": "WH-002"},
        headers=DEVICE_HEADERS,
    )
    assert res.status_code == 200

    result = await db_session.execute(
        select(Equipment.status).where(Equipment.license_key == "WH-002")
    )
    assert result.scalar_one() == EquipmentStatus.OFFLINE


@pytest.mark.asyncio
async def test_unknown_license_key(client: AsyncClient, db_engine, caplog):
    with caplog.at_level(logging.WARNING, logger="medequip.webhooks"):
        res = await client.post(
            "/api/webhooks/events",
            json={"event": "equipment_online", "license_key": "UNKNOWN-KEY"},
            headers=DEVICE_HEADERS,
        )
    assert res.status_code == 200
    assert res.json() == {"msg": "Event received"}
    assert any("UNKNOWN-KEY" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_pending_equipment_untouched(client: AsyncClient, test_org, ecg_module, db_session, caplog):
    await make_equipment(
        db_session, test_org, ecg_module, "WH-003", status=EquipmentStatus.PENDING_APPROVAL
    )
    with caplog.at_level(logging.WARNING, logger="medequip.webhooks"):
        res = await client.post(
            "/api/webhooks/events",
            json={"event": "equipment_online", "license_key": "WH-003"},
            headers=DEVICE_HEADERS,
        )
    assert res.status_code == 200
    assert any("pending approval" in r.getMessage() for r in caplog.records)

    result = await db_session.execute(
        select(Equipment.status, Equipment.last_seen).where(Equipment.license_key == "WH-003")
    )
    status, last_seen = result.one()
    assert status == EquipmentStatus.PENDING_APPROVAL
    assert last_seen is None


@pytest.mark.asyncio
async def test_internal_error_still_200(client: AsyncClient, test_org, ecg_module, db_session, monkeypatch, caplog):
    await make_equipment(db_session, test_org, ecg_module, "WH-004")

    import routers.webhooks as webhooks

    def broken_clock():
        raise RuntimeError("clock failure")

    monkeypatch.setattr(webhooks, "utcnow", broken_clock)
    with caplog.at_level(logging.ERROR, logger="medequip.webhooks"):
        res = await client.post(
            "/api/webhooks/events",
            json={"event": "equipment_online", "license_key": "WH-004"},
            headers=DEVICE_HEADERS,
        )
    assert res.status_code == 200
    assert any(r.levelno == logging.ERROR for r in caplog.records)

    result = await db_session.execute(
        select(Equipment.status).where(Equipment.license_key == "WH-004")
    )
    assert result.scalar_one() == EquipmentStatus.OFFLINE


@pytest.mark.asyncio
async def test_invalid_event_rejected(client: AsyncClient, db_engine):
    res = await client.post(
        "/api/webhooks/events",
        json={"event": "equipment_exploded", "license_key": "WH-005"},
        headers=DEVICE_HEADERS,
    )
    assert res.status_code == 400
    assert res.json()["errors"][0]["param"] == "event"


@pytest.mark.asyncio
async def test_missing_api_key(client: AsyncClient, db_engine):
    res = await client.post(
        "/api/webhooks/events",
        json={"event": "equipment_online", "license_key": "WH-006"},
    )
    assert res.status_code == 401
    assert res.json() == {"msg": "No API key, authorization denied"}


@pytest.mark.asyncio
async def test_wrong_api_key(client: AsyncClient, db_engine):
    res = await client.post(
        "/api/webhooks/events",
        json={"event": "equipment_online", "license_key": "WH-007"},
        headers={"X-API-Key": "guess"},
    )
    assert res.status_code == 403
