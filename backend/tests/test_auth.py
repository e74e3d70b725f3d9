# tests/test_auth.py - Authentication & authorization tests
from datetime import timedelta

import pytest
from httpx import AsyncClient

from auth import AuthService, require_permission
from tests.conftest import get_auth_headers, TEST_PASSWORD


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_success(self, client: AsyncClient, test_org):
        res = await client.post("/api/auth/register", json={
            "name": "New Nurse",
            "email": "New.Nurse@stmarys.example.com",
            "password": "SecurePass123!",
            "organization_id": test_org.id,
        })
        assert res.status_code == 200
        data = res.json()
        assert data["token"]
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "new.nurse@stmarys.example.com"
        assert data["user"]["organization_id"] == test_org.id
        # No roles seeded: the read_only role is created on demand
        assert data["user"]["role"] == "read_only"

    async def test_register_prefers_hospital_user_role(self, client: AsyncClient, test_org, roles):
        res = await client.post("/api/auth/register", json={
            "name": "Ward Staff",
            "email": "staff@stmarys.example.com",
            "password": "SecurePass123!",
            "organization_id": test_org.id,
        })
        assert res.status_code == 200
        assert res.json()["user"]["role"] == "hospital_user"

    async def test_register_short_password(self, client: AsyncClient, test_org):
        res = await client.post("/api/auth/register", json={
            "name": "Weak",
            "email": "weak@stmarys.example.com",
            "password": "short",
            "organization_id": test_org.id,
        })
        assert res.status_code == 400
        errors = res.json()["errors"]
        assert errors[0]["param"] == "password"

    async def test_register_duplicate_email(self, client: AsyncClient, test_org):
        payload = {
            "name": "Dupe",
            "email": "dupe@stmarys.example.com",
            "password": "SecurePass123!",
            "organization_id": test_org.id,
        }
        await client.post("/api/auth/register", json=payload)
        res = await client.post("/api/auth/register", json=payload)
        assert res.status_code == 400
        assert res.json() == {"errors": [{"msg": "User already exists"}]}

    async def test_register_unknown_organization(self, client: AsyncClient, db_engine):
        res = await client.post("/api/auth/register", json={
            "name": "Lost",
            "email": "lost@stmarys.example.com",
            "password": "SecurePass123!",
            "organization_id": "does-not-exist",
        })
        assert res.status_code == 404
        assert res.json() == {"msg": "Organization not found"}

    async def test_register_invalid_email(self, client: AsyncClient, test_org):
        res = await client.post("/api/auth/register", json={
            "name": "Bad",
            "email": "not-an-email",
            "password": "SecurePass123!",
            "organization_id": test_org.id,
        })
        assert res.status_code == 400


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, hospital_admin):
        res = await client.post("/api/auth/login", json={
            "email": hospital_admin.email,
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 200
        data = res.json()
        assert data["user"]["role"] == "hospital_admin"
        assert "manage_users" in data["user"]["permissions"]

    async def test_login_wrong_password(self, client: AsyncClient, hospital_admin):
        res = await client.post("/api/auth/login", json={
            "email": hospital_admin.email,
            "password": "WrongPassword!",
        })
        assert res.status_code == 401
        assert res.json() == {"msg": "Invalid credentials"}

    async def test_login_unknown_user(self, client: AsyncClient, db_engine):
        res = await client.post("/api/auth/login", json={
            "email": "nobody@stmarys.example.com",
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 401


@pytest.mark.asyncio
class TestIdentity:
    async def test_me(self, client: AsyncClient, technician, test_org):
        res = await client.get("/api/auth/me", headers=get_auth_headers(technician))
        assert res.status_code == 200
        data = res.json()
        assert data["id"] == technician.id
        assert data["organization_id"] == test_org.id
        assert data["role"] == "technician"
        assert set(data["permissions"]) == {"manage_equipment_status", "view_equipment_status"}

    async def test_missing_token(self, client: AsyncClient, db_engine):
        res = await client.get("/api/auth/me")
        assert res.status_code == 401
        assert res.json() == {"msg": "No token, authorization denied"}

    async def test_invalid_token(self, client: AsyncClient, db_engine):
        res = await client.get("/api/auth/me", headers={"Authorization": "Bearer not.a.token"})
        assert res.status_code == 401
        assert res.json() == {"msg": "Token is not valid"}

    async def test_expired_token(self, client: AsyncClient, technician):
        token = AuthService.create_access_token({"sub": technician.id}, timedelta(seconds=-1))
        res = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401
        assert res.json() == {"msg": "Token expired"}

    async def test_token_for_deleted_user(self, client: AsyncClient, db_engine):
        token = AuthService.create_access_token({"sub": "ghost"})
        res = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401


@pytest.mark.asyncio
class TestPermissionGuard:
    async def test_missing_permission(self, client: AsyncClient, technician):
        res = await client.post(
            "/api/organizations",
            json={"name": "New Org", "address": "Somewhere"},
            headers=get_auth_headers(technician),
        )
        assert res.status_code == 403
        assert res.json() == {
            "msg": "Forbidden: Requires one of the following permissions: manage_organizations"
        }

    async def test_user_without_role(self, client: AsyncClient, db_session, test_org):
        from tests.conftest import make_user
        user = await make_user(db_session, test_org, None, "norole@stmarys.example.com")
        res = await client.get("/api/reports/summary", headers=get_auth_headers(user))
        assert res.status_code == 403
        assert res.json() == {"msg": "Forbidden: No permissions found for user."}

    async def test_any_of_permissions(self, client: AsyncClient, hospital_admin):
        # manage_users satisfies a manage_users OR manage_organizations guard
        res = await client.get("/api/reports/audit", headers=get_auth_headers(hospital_admin))
        assert res.status_code == 200


def test_require_permission_rejects_unknown_names():
    with pytest.raises(ValueError):
        require_permission("manage_everything")


def test_password_hashing_roundtrip():
    hashed = AuthService.hash_password("s3cret-pass")
    assert hashed != "s3cret-pass"
    assert AuthService.verify_password("s3cret-pass", hashed)
    assert not AuthService.verify_password("other-pass", hashed)
