# storefront/models/job.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, Boolean, ForeignKey, DateTime, JSON, UniqueConstraint

from storefront.core.database import Base, utcnow


class JobKind:
    MAIN_IMAGE = "MAIN_IMAGE"
    DETAIL_PAGE = "DETAIL_PAGE"
    IMAGE_EDIT = "IMAGE_EDIT"

    GENERATION = (MAIN_IMAGE, DETAIL_PAGE)


class JobStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Job(Base):
    """One externally fulfilled unit of work: a generation or an in-place edit."""
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), index=True)

    kind: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING, index=True)

    product_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    product_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Opaque asset references in, output references out
    input_refs: Mapped[list] = mapped_column(JSON, default=list)
    outputs: Mapped[list] = mapped_column(JSON, default=list)

    # Charge breakdown; refunds reverse exactly these buckets
    cost: Mapped[int] = mapped_column(Integer, default=0)
    paid_portion: Mapped[int] = mapped_column(Integer, default=0)
    bonus_portion: Mapped[int] = mapped_column(Integer, default=0)

    # In-place edit: the completed job and output slot being replaced
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=True, index=True)
    target_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Discounted retry bookkeeping
    retry_of: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    discounted_retry: Mapped[bool] = mapped_column(Boolean, default=False)
    retry_used: Mapped[bool] = mapped_column(Boolean, default=False)

    watermark_unlocked: Mapped[bool] = mapped_column(Boolean, default=False)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class EditLease(Base):
    """Exclusive hold on one output slot of a job while it is being re-edited."""
    __tablename__ = "edit_leases"
    __table_args__ = (
        UniqueConstraint("job_id", "target_index", name="uq_edit_leases_job_index"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    target_index: Mapped[int] = mapped_column(Integer)
    holder: Mapped[str] = mapped_column(String(36))
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
