# storefront/models/ledger_entry.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, ForeignKey, DateTime

from storefront.core.database import Base, utcnow


class LedgerKind:
    CONSUME = "CONSUME"
    REFUND = "REFUND"
    RECHARGE = "RECHARGE"
    SERVICE_UNLOCK = "SERVICE_UNLOCK"
    SYSTEM_REWARD = "SYSTEM_REWARD"
    DAILY_REWARD = "DAILY_REWARD"
    REFERRAL_REWARD = "REFERRAL_REWARD"

    DEBITS = (CONSUME, SERVICE_UNLOCK)
    GRANTS = (RECHARGE, SYSTEM_REWARD, DAILY_REWARD, REFERRAL_REWARD)


class LedgerEntry(Base):
    """Append-only record of every balance change. Never updated or deleted."""
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    # Signed: negative for debits, positive for refunds and grants
    amount: Mapped[int] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column(String(30))
    description: Mapped[str] = mapped_column(String(255))

    # Job / task / appeal / code the movement belongs to
    ref_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # e.g. "job:<id>:refund"; a second insert with the same key is rejected
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(160), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
