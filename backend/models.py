# models.py - Database models for the medical equipment backend
# - UUID string primary keys everywhere
# - Organizations are the tenant boundary; every owned row carries organization_id
# - Uniqueness enforced by the database, not by read-then-write checks
# - Audit logs are append-only

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def enum_values(enum_cls):
    # Persist enum values ("pending_approval"), not member names
    return [m.value for m in enum_cls]


# ============================================================
# ENUMS
# ============================================================

class EquipmentStatus(str, PyEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    PENDING_APPROVAL = "pending_approval"


class ModuleName(str, PyEnum):
    PATIENT_MONITOR = "Patient Monitor"
    FETAL_MONITOR = "Fetal Monitor"
    ECG = "ECG"


class AuditTargetType(str, PyEnum):
    USER = "User"
    EQUIPMENT = "Equipment"
    ORGANIZATION = "Organization"
    SUBSCRIPTION = "Subscription"
    ROLE = "Role"
    MODULE = "Module"


class AuditAction(str, PyEnum):
    ORG_CREATED = "create_organization"
    ORG_UPDATED = "update_organization"
    ROLE_CREATED = "create_role"
    ROLE_UPDATED = "update_role"
    USER_ROLE_CHANGED = "update_user_role"
    MODULE_CREATED = "create_module"
    SUBSCRIPTION_CREATED = "create_subscription"
    SUBSCRIPTION_UPDATED = "update_subscription"
    EQUIPMENT_ENROLLED = "enroll_equipment"
    EQUIPMENT_UPDATED = "update_equipment"
    EQUIPMENT_APPROVED = "approve_equipment"


# ============================================================
# ORGANIZATIONS
# ============================================================

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False, index=True)
    address = Column(String, nullable=False)
    locations = Column(JSON, nullable=False, default=list)
    branding = Column(JSON, nullable=False, default=dict)
    # Set once a Subscription exists; plain column to avoid a circular FK
    subscription_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    # Relationships
    users = relationship("User", back_populates="organization")
    equipment = relationship("Equipment", back_populates="organization")


# ============================================================
# ROLES & USERS
# ============================================================

class Role(Base):
    __tablename__ = "roles"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    permissions = Column(JSON, nullable=False, default=list)

    users = relationship("User", back_populates="role")


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    name = Column(String, nullable=False)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    role_id = Column(String, ForeignKey("roles.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    # Relationships
    organization = relationship("Organization", back_populates="users")
    role = relationship("Role", back_populates="users")


# ============================================================
# MODULES (reference data)
# ============================================================

class Module(Base):
    __tablename__ = "modules"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(SQLEnum(ModuleName, values_callable=enum_values), unique=True, nullable=False)
    description = Column(Text, nullable=True)


# ============================================================
# EQUIPMENT
# ============================================================

class Equipment(Base):
    __tablename__ = "equipment"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    module_id = Column(String, ForeignKey("modules.id"), nullable=False, index=True)
    license_key = Column(String, nullable=False)
    name = Column(String, nullable=True)
    location = Column(String, nullable=True)
    status = Column(SQLEnum(EquipmentStatus, values_callable=enum_values), default=EquipmentStatus.OFFLINE, nullable=False)
    enrolled_at = Column(DateTime(timezone=True), nullable=True)
    last_seen = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    organization = relationship("Organization", back_populates="equipment")
    module = relationship("Module")

    __table_args__ = (
        UniqueConstraint("license_key", name="uq_equipment_license_key"),
        Index("idx_equipment_org_status", "organization_id", "status"),
        Index("idx_equipment_org_module", "organization_id", "module_id"),
    )


# ============================================================
# SUBSCRIPTIONS
# ============================================================

class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False)
    start_date = Column(DateTime(timezone=True), default=utcnow)
    end_date = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship(
        "SubscriptionModule",
        back_populates="subscription",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        # One subscription per organization
        UniqueConstraint("organization_id", name="uq_subscription_organization"),
    )


class SubscriptionModule(Base):
    __tablename__ = "subscription_modules"

    id = Column(String, primary_key=True, default=new_uuid)
    subscription_id = Column(String, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    module_id = Column(String, ForeignKey("modules.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

    subscription = relationship("Subscription", back_populates="items")
    module = relationship("Module", lazy="selectin")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_subscription_module_quantity"),
    )


# ============================================================
# AUDIT LOGS (append-only, never updated or deleted)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    organization_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False, index=True)
    target_type = Column(SQLEnum(AuditTargetType, values_callable=enum_values), nullable=False)
    target_id = Column(String, nullable=False)
    details = Column(JSON, nullable=True)

    user = relationship("User")

    __table_args__ = (
        Index("idx_audit_org_timestamp", "organization_id", "timestamp"),
    )
