# auth.py - Identity resolution & authorization guards
# Features:
# - Signed JWT access tokens (HS256) with expiry and JTI
# - Identity resolved per request from the token subject: user, organization,
#   role name and flattened permission set
# - Permission guard with OR semantics across the required permissions
# - Shared-key credential for the device agent (discovery + webhooks)

import os
import hmac
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database import get_db_session, commit_or_conflict
from errors import Unauthenticated, Forbidden, NotFound
from models import User, Role, Organization
from permissions import Permission, DEFAULT_ROLE_NAMES, DEFAULT_ROLES, role_permissions

logger = logging.getLogger("medequip.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set. Generated ephemeral key; tokens will not "
        "survive a restart. Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
MIN_PASSWORD_LENGTH = 6

# Shared secret for the discovery agent and webhook sender
DEVICE_API_KEY = os.getenv("DEVICE_API_KEY", "")

security = HTTPBearer(auto_error=False)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    organization_id: str = Field(..., min_length=1)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    email: str
    name: str
    organization_id: str
    role: Optional[str] = None
    permissions: List[str] = []


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Credential handling and user bootstrap"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise Unauthenticated("Token expired")
        except JWTError:
            raise Unauthenticated("Token is not valid")

    @staticmethod
    def token_claims(user: User, role: Optional[Role]) -> Dict[str, Any]:
        return {
            "sub": user.id,
            "organization_id": user.organization_id,
            "role": role.name if role else None,
            "permissions": list(role.permissions or []) if role else [],
        }

    @staticmethod
    async def ensure_default_role(db: AsyncSession) -> Role:
        """Lowest-privilege role for new users, created on first use if missing."""
        stmt = select(Role).where(Role.name.in_(DEFAULT_ROLE_NAMES))
        result = await db.execute(stmt)
        found = {r.name: r for r in result.scalars().all()}
        for name in DEFAULT_ROLE_NAMES:
            if name in found:
                return found[name]

        fallback = DEFAULT_ROLE_NAMES[-1]
        role = Role(
            name=fallback,
            description=DEFAULT_ROLES[fallback]["description"],
            permissions=role_permissions(fallback),
        )
        db.add(role)
        try:
            await db.commit()
        except IntegrityError:
            # Created concurrently by another request
            await db.rollback()
            result = await db.execute(select(Role).where(Role.name == fallback))
            return result.scalar_one()
        logger.info(f"Created default role '{fallback}'")
        return role

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> tuple:
        org = await db.get(Organization, user_data.organization_id)
        if not org:
            raise NotFound("Organization not found")

        role = await AuthService.ensure_default_role(db)

        new_user = User(
            email=user_data.email.lower(),
            name=user_data.name,
            password_hash=AuthService.hash_password(user_data.password),
            organization_id=org.id,
            role_id=role.id,
        )
        db.add(new_user)
        await commit_or_conflict(db, "User already exists")
        return new_user, role

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        stmt = select(User).options(selectinload(User.role)).where(User.email == email.lower())
        result = await db.execute(stmt)
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            return None
        return user


def has_any_permission(held: List[str], required: List[str]) -> bool:
    """True when at least one required permission is held."""
    return any(p in held for p in required)


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    if credentials is None:
        raise Unauthenticated("No token, authorization denied")

    payload = AuthService.verify_token(credentials.credentials)
    if payload.get("type") != "access":
        raise Unauthenticated("Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Token is not valid")

    stmt = select(User).options(selectinload(User.role)).where(User.id == user_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if not user:
        raise Unauthenticated("User not found")

    return CurrentUser(
        id=user.id,
        email=user.email,
        name=user.name,
        organization_id=user.organization_id,
        role=user.role.name if user.role else None,
        permissions=list(user.role.permissions or []) if user.role else [],
    )


def require_permission(*permissions):
    """Dependency factory: caller must hold at least one of the permissions.

    Names are checked against the registry when the route is declared, so a
    typo fails at import time rather than denying everyone at runtime.
    """
    required = [Permission(p).value for p in permissions]

    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not user.permissions:
            raise Forbidden("Forbidden: No permissions found for user.")
        if not has_any_permission(user.permissions, required):
            raise Forbidden(
                f"Forbidden: Requires one of the following permissions: {', '.join(required)}"
            )
        return user
    return _check


def require_device_key(x_api_key: Optional[str] = Header(None)) -> bool:
    """Shared-key check for the discovery agent and webhook sender."""
    if not x_api_key:
        raise Unauthenticated("No API key, authorization denied")
    if not DEVICE_API_KEY or not hmac.compare_digest(x_api_key.encode(), DEVICE_API_KEY.encode()):
        raise Forbidden("Invalid API key")
    return True
