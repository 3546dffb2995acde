# FILE: storefront/services/appeal_service.py
import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import APPEAL_REJECT_NOTE_MIN_LENGTH
from storefront.core.database import utcnow
from storefront.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from storefront.core.retry import run_in_transaction
from storefront.models.appeal import Appeal, AppealStatus
from storefront.models.job import Job, JobStatus
from storefront.services import ledger_service

logger = logging.getLogger("storefront.appeals")

APPROVE = "APPROVE"
REJECT = "REJECT"
DEFAULT_APPROVE_NOTE = "Appeal approved, credits refunded"


async def file_appeal(
    session_factory: async_sessionmaker,
    owner_id: str,
    job_id: str,
    reason: Optional[str] = None,
) -> Appeal:
    """Open an appeal against a completed job. One appeal per job, ever."""
    reason_text = reason.strip() if isinstance(reason, str) and reason.strip() else None

    async def _file(db: AsyncSession) -> Appeal:
        job = (await db.execute(select(Job).where(Job.id == job_id))).scalar_one_or_none()
        if not job:
            raise NotFoundError("Job not found", {"job_id": job_id})
        if job.owner_id != owner_id:
            raise ForbiddenError("You cannot appeal this job")
        if job.status != JobStatus.COMPLETED:
            raise ValidationError("Only completed jobs can be appealed")
        if not job.cost:
            raise ValidationError("Nothing was charged for this job")

        existing = await db.execute(select(Appeal.id).where(Appeal.job_id == job_id))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("This job has already been appealed", {"job_id": job_id})

        # Discounted retries refund what they cost, not the standard price
        appeal = Appeal(
            id=str(uuid.uuid4()),
            job_id=job_id,
            owner_id=owner_id,
            reason=reason_text,
            status=AppealStatus.PENDING,
            refund_amount=job.cost,
        )
        try:
            async with db.begin_nested():
                db.add(appeal)
                await db.flush()
        except IntegrityError:
            raise ConflictError("This job has already been appealed", {"job_id": job_id})
        return appeal

    appeal = await run_in_transaction(session_factory, _file)
    logger.info(f"Appeal {appeal.id} filed on job {job_id} by {owner_id} (refund {appeal.refund_amount})")
    return appeal


async def resolve_appeal(
    session_factory: async_sessionmaker,
    admin_id: str,
    appeal_id: str,
    action: str,
    admin_note: Optional[str] = None,
) -> Appeal:
    action = (action or "").upper()
    if action not in (APPROVE, REJECT):
        raise ValidationError("action must be APPROVE or REJECT")

    note = (admin_note or "").strip()
    if action == REJECT and len(note) < APPEAL_REJECT_NOTE_MIN_LENGTH:
        raise ValidationError(
            f"Rejecting an appeal needs a reason of at least {APPEAL_REJECT_NOTE_MIN_LENGTH} characters"
        )
    if action == APPROVE and not note:
        note = DEFAULT_APPROVE_NOTE

    new_status = AppealStatus.APPROVED if action == APPROVE else AppealStatus.REJECTED

    async def _resolve(db: AsyncSession) -> Appeal:
        appeal = await db.get(Appeal, appeal_id)
        if not appeal:
            raise NotFoundError("Appeal not found", {"appeal_id": appeal_id})

        res = await db.execute(
            update(Appeal)
            .where(Appeal.id == appeal_id, Appeal.status == AppealStatus.PENDING)
            .values(status=new_status, admin_note=note, resolved_by=admin_id, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise ConflictError("This appeal has already been resolved", {"appeal_id": appeal_id})

        if action == APPROVE:
            # Appeal refunds always land in the paid bucket
            await ledger_service.refund(
                db,
                appeal.owner_id,
                appeal.refund_amount,
                0,
                f"Appeal refund - {appeal.refund_amount} credits",
                key=f"appeal:{appeal_id}:refund",
                ref_id=appeal.job_id,
            )

        refreshed = await db.execute(
            select(Appeal).where(Appeal.id == appeal_id).execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    appeal = await run_in_transaction(session_factory, _resolve)
    logger.info(f"Appeal {appeal_id} {appeal.status} by {admin_id}")
    return appeal


async def list_appeals(
    session_factory: async_sessionmaker,
    viewer_id: str,
    is_admin: bool = False,
    status: Optional[str] = None,
) -> List[Tuple[Appeal, Job]]:
    stmt = select(Appeal, Job).join(Job, Job.id == Appeal.job_id)
    if not is_admin:
        stmt = stmt.where(Appeal.owner_id == viewer_id)
    if status:
        stmt = stmt.where(Appeal.status == status.upper())
    stmt = stmt.order_by(Appeal.created_at.desc())

    async with session_factory() as db:
        rows = await db.execute(stmt)
        return [(appeal, job) for appeal, job in rows.all()]
