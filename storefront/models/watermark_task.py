# storefront/models/watermark_task.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, ForeignKey, DateTime, Index

from storefront.core.database import Base, utcnow


class TaskStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class WatermarkTask(Base):
    """One watermark-removal request; drained FIFO by the queue worker."""
    __tablename__ = "watermark_tasks"
    __table_args__ = (
        Index("ix_watermark_tasks_status_created", "status", "created_at", "id"),
    )

    # Autoincrement id breaks created_at ties inside a batch
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    batch_id: Mapped[str] = mapped_column(String(36), index=True)

    original_ref: Mapped[str] = mapped_column(String(1024))
    result_ref: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.PENDING)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # This task's share of the batch charge
    paid_portion: Mapped[int] = mapped_column(Integer, default=0)
    bonus_portion: Mapped[int] = mapped_column(Integer, default=0)

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    # Remote task id is kept so a retry polls the same remote job
    remote_task_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
