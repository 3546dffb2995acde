# storefront/models/account.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, CheckConstraint

from storefront.core.database import Base, utcnow


class AccountRole:
    USER = "USER"
    ADMIN = "ADMIN"


class Account(Base):
    """One per user: identity plus the two credit buckets."""
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("paid_balance >= 0", name="paid_balance_non_negative"),
        CheckConstraint("bonus_balance >= 0", name="bonus_balance_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(190), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(120))
    role: Mapped[str] = mapped_column(String(20), default=AccountRole.USER)

    # Purchased / redeemed credits
    paid_balance: Mapped[int] = mapped_column(Integer, default=0)
    # Promotional credits, spent first
    bonus_balance: Mapped[int] = mapped_column(Integer, default=0)

    last_check_in: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
