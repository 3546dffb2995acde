# FILE: storefront/api/deps.py

import jwt
from datetime import timezone

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront.core.config import JWT_SECRET, JWT_ALGORITHM
from storefront.models.account import Account, AccountRole

security = HTTPBearer(auto_error=False)


def get_session_factory(request: Request) -> async_sessionmaker:
    return request.app.state.session_factory


def get_pricing(request: Request):
    return request.app.state.pricing


def get_job_manager(request: Request):
    return request.app.state.job_manager


def get_watermark_queue(request: Request):
    return request.app.state.watermark_queue


async def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        session_factory: async_sessionmaker = Depends(get_session_factory),
):
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = jwt.decode(
            credentials.credentials.strip(),
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("user_id") or payload.get("id")
    if not user_id or not isinstance(user_id, str):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    async with session_factory() as db:
        user = (await db.execute(select(Account).where(Account.id == user_id))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "created_at": user.created_at.replace(tzinfo=timezone.utc).isoformat(),
    }


async def require_admin(user=Depends(get_current_user)):
    if user["role"] != AccountRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
