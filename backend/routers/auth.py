# routers/auth.py - Registration, login and identity endpoints
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse,
    get_current_user, CurrentUser, ACCESS_TOKEN_EXPIRE_MINUTES,
)
from database import get_db_session
from errors import Unauthenticated

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


def _build_token_response(user_obj, role) -> TokenResponse:
    """Build token response from a user ORM instance and its role"""
    claims = AuthService.token_claims(user_obj, role)
    return TokenResponse(
        token=AuthService.create_access_token(claims),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "name": user_obj.name,
            "organization_id": user_obj.organization_id,
            "role": claims["role"],
            "permissions": claims["permissions"],
        },
    )


@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a user with the lowest-privilege role"""
    user, role = await AuthService.register_user(user_data, db)
    return _build_token_response(user, role)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive a token"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise Unauthenticated("Invalid credentials")
    return _build_token_response(user, user.role)


@router.get("/me", response_model=CurrentUser)
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated identity"""
    return user
