# FILE: storefront/services/auth_service.py
import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import bcrypt
import jwt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRATION_HOURS
from storefront.core.errors import ConflictError, ValidationError
from storefront.core.retry import run_in_transaction
from storefront.models.account import Account, AccountRole
from storefront.services.reward_service import grant_registration_bonus

logger = logging.getLogger("storefront.auth")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(user_id: str, email: str) -> str:
    payload = {
        "user_id": user_id,
        "email": email,
        "sub": email,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def register_account(
    session_factory: async_sessionmaker,
    email: str,
    password: str,
    name: str,
    role: str = AccountRole.USER,
) -> Account:
    """Create the account and its registration bonus in one transaction."""
    email = normalize_email(email)
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if not password or len(password) < 6:
        raise ValidationError("Password must be at least 6 characters")

    password_hash = hash_password(password)
    account_id = str(uuid.uuid4())

    async def _register(db: AsyncSession) -> Account:
        existing = (await db.execute(select(Account.id).where(Account.email == email))).scalar_one_or_none()
        if existing:
            raise ConflictError("Email already registered")

        account = Account(
            id=account_id,
            email=email,
            password_hash=password_hash,
            name=(name or email.split("@")[0]).strip(),
            role=role,
            paid_balance=0,
            bonus_balance=0,
        )
        try:
            async with db.begin_nested():
                db.add(account)
                await db.flush()
        except IntegrityError:
            raise ConflictError("Email already registered")
        await grant_registration_bonus(db, account_id)
        return account

    account = await run_in_transaction(session_factory, _register)
    logger.info(f"Registered account {account_id} ({email})")
    return account


async def authenticate(session_factory: async_sessionmaker, email: str, password: str) -> Optional[Account]:
    async with session_factory() as db:
        account = (
            await db.execute(select(Account).where(Account.email == normalize_email(email)))
        ).scalar_one_or_none()
    if not account or not verify_password(password, account.password_hash):
        return None
    return account
