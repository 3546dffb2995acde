# FILE: storefront/api/auth.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.api.deps import get_current_user, get_session_factory
from storefront.api.presenters import iso
from storefront.schemas.auth import UserCreate, UserLogin, TokenResponse, UserResponse
from storefront.services.auth_service import register_account, authenticate, create_token

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_response(account) -> UserResponse:
    return UserResponse(
        id=account.id,
        email=account.email,
        name=account.name,
        role=account.role,
        created_at=iso(account.created_at),
    )


@router.post("/register", response_model=TokenResponse)
async def register(data: UserCreate, session_factory: async_sessionmaker = Depends(get_session_factory)):
    account = await register_account(session_factory, data.email, data.password, data.name)
    return TokenResponse(token=create_token(account.id, account.email), user=_user_response(account))


@router.post("/login", response_model=TokenResponse)
async def login(data: UserLogin, session_factory: async_sessionmaker = Depends(get_session_factory)):
    account = await authenticate(session_factory, data.email, data.password)
    if not account:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenResponse(token=create_token(account.id, account.email), user=_user_response(account))


@router.get("/me", response_model=UserResponse)
async def auth_me(user=Depends(get_current_user)):
    return UserResponse(
        id=user["id"], email=user["email"], name=user["name"], role=user["role"], created_at=user["created_at"]
    )
