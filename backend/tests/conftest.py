# tests/conftest.py - Shared test fixtures
import os
import uuid

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["DEVICE_API_KEY"] = "test-device-key"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ENVIRONMENT"] = "test"

from models import (  # noqa: E402
    Base, User, Organization, Role, Module, ModuleName,
    Equipment, EquipmentStatus, utcnow,
)
from auth import AuthService  # noqa: E402
from audit import audit_logger  # noqa: E402
from database import get_db_session  # noqa: E402
from permissions import DEFAULT_ROLES, role_permissions  # noqa: E402
from main import app  # noqa: E402

DEVICE_HEADERS = {"X-API-Key": "test-device-key"}
TEST_PASSWORD = "Password123!"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency and audit sessions"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    audit_logger.session_factory = session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    audit_logger.session_factory = None


# ============================================================
# DATA FIXTURES
# ============================================================

async def make_org(db, name: str) -> Organization:
    org = Organization(
        id=str(uuid.uuid4()),
        name=name,
        address="1 Hospital Road",
        locations=["Ward A", "ICU"],
        branding={"primary_color": "#005eb8"},
    )
    db.add(org)
    await db.commit()
    await db.refresh(org)
    return org


async def make_user(db, org: Organization, role: Role, email: str, name: str = "Test User") -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        name=name,
        password_hash=AuthService.hash_password(TEST_PASSWORD),
        organization_id=org.id,
        role_id=role.id if role else None,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_equipment(db, org: Organization, module: Module, license_key: str,
                         status: EquipmentStatus = EquipmentStatus.OFFLINE, **fields) -> Equipment:
    equipment = Equipment(
        organization_id=org.id,
        module_id=module.id,
        license_key=license_key,
        status=status,
        enrolled_at=None if status == EquipmentStatus.PENDING_APPROVAL else utcnow(),
        **fields,
    )
    db.add(equipment)
    await db.commit()
    await db.refresh(equipment)
    return equipment


@pytest_asyncio.fixture
async def roles(db_session):
    """All built-in roles, keyed by name"""
    created = {}
    for name, definition in DEFAULT_ROLES.items():
        role = Role(
            id=str(uuid.uuid4()),
            name=name,
            description=definition["description"],
            permissions=role_permissions(name),
        )
        db_session.add(role)
        created[name] = role
    await db_session.commit()
    return created


@pytest_asyncio.fixture
async def test_org(db_session):
    return await make_org(db_session, "St Mary's Hospital")


@pytest_asyncio.fixture
async def other_org(db_session):
    return await make_org(db_session, "General Clinic")


@pytest_asyncio.fixture
async def agi_admin(db_session, test_org, roles):
    """System-wide administrator (global role)"""
    return await make_user(db_session, test_org, roles["agi_admin"], "agi@medequip.example.com", "AGI Admin")


@pytest_asyncio.fixture
async def hospital_admin(db_session, test_org, roles):
    return await make_user(db_session, test_org, roles["hospital_admin"], "admin@stmarys.example.com", "Hospital Admin")


@pytest_asyncio.fixture
async def technician(db_session, test_org, roles):
    return await make_user(db_session, test_org, roles["technician"], "tech@stmarys.example.com", "Technician")


@pytest_asyncio.fixture
async def read_only_user(db_session, test_org, roles):
    return await make_user(db_session, test_org, roles["read_only"], "viewer@stmarys.example.com", "Viewer")


@pytest_asyncio.fixture
async def other_admin(db_session, other_org, roles):
    """Hospital admin of a different organization"""
    return await make_user(db_session, other_org, roles["hospital_admin"], "admin@clinic.example.com", "Clinic Admin")


@pytest_asyncio.fixture
async def ecg_module(db_session):
    module = Module(id=str(uuid.uuid4()), name=ModuleName.ECG, description="12-lead ECG")
    db_session.add(module)
    await db_session.commit()
    return module


@pytest_asyncio.fixture
async def fetal_module(db_session):
    module = Module(id=str(uuid.uuid4()), name=ModuleName.FETAL_MONITOR)
    db_session.add(module)
    await db_session.commit()
    return module


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "organization_id": user.organization_id,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
