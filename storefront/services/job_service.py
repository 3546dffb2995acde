# FILE: storefront/services/job_service.py
# =========================================================
# Job lifecycle: charge -> dispatch -> complete | fail + refund
# =========================================================

"""
Single jobs (main image / detail page generation) and in-place edits of one
output of a completed generation.

Money moves only inside short transactions; the external call happens between
them with no transaction open. The compensating path (``fail_job``) flips
PENDING -> FAILED with a conditional update and refunds only when that update
matched, so concurrent failure handlers and the reaper refund a job once.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import (
    FULFILLMENT_TIMEOUT_SECONDS,
    EDIT_LEASE_SECONDS,
    JOB_STALE_GRACE_SECONDS,
    JOB_REAPER_TICK_SECONDS,
)
from storefront.core.database import utcnow
from storefront.core.errors import (
    ConflictError,
    ForbiddenError,
    FulfillmentError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from storefront.core.retry import run_in_transaction
from storefront.models.job import Job, JobKind, JobStatus, EditLease
from storefront.models.ledger_entry import LedgerKind
from storefront.services import ledger_service
from storefront.services.ledger_service import Balance
from storefront.services import pricing_service as prices

logger = logging.getLogger("storefront.jobs")

JOB_LABELS = {
    JobKind.MAIN_IMAGE: "Main image",
    JobKind.DETAIL_PAGE: "Detail page",
    JobKind.IMAGE_EDIT: "Image edit",
}

STANDARD_COST_KEYS = {
    JobKind.MAIN_IMAGE: prices.MAIN_IMAGE_STANDARD_COST,
    JobKind.DETAIL_PAGE: prices.DETAIL_PAGE_STANDARD_COST,
}

RETRY_COST_KEYS = {
    JobKind.MAIN_IMAGE: prices.MAIN_IMAGE_RETRY_COST,
    JobKind.DETAIL_PAGE: prices.DETAIL_PAGE_RETRY_COST,
}


@dataclass
class JobOutcome:
    job: Job
    balance: Balance
    editing_indexes: List[int] = field(default_factory=list)


async def _load_job(db: AsyncSession, job_id: str, lock: bool = False) -> Job:
    stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    job = (await db.execute(stmt)).scalar_one_or_none()
    if not job:
        raise NotFoundError("Job not found", {"job_id": job_id})
    return job


async def _load_owned_job(db: AsyncSession, owner_id: str, job_id: str, lock: bool = False) -> Job:
    job = await _load_job(db, job_id, lock=lock)
    if job.owner_id != owner_id:
        raise ForbiddenError("You do not have access to this job")
    return job


async def editing_indexes(db: AsyncSession, job_id: str) -> List[int]:
    """Output slots of ``job_id`` with a live edit lease."""
    rows = await db.execute(
        select(EditLease.target_index)
        .where(EditLease.job_id == job_id, EditLease.expires_at > utcnow())
        .order_by(EditLease.target_index)
    )
    return list(rows.scalars().all())


class JobManager:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        pricing,
        client,
        timeout: float = FULFILLMENT_TIMEOUT_SECONDS,
        lease_seconds: float = EDIT_LEASE_SECONDS,
        stale_grace: float = JOB_STALE_GRACE_SECONDS,
    ):
        self.session_factory = session_factory
        self.pricing = pricing
        self.client = client
        self.timeout = timeout
        self.lease_seconds = lease_seconds
        self.stale_grace = stale_grace

    # ─────────────────────────────────────────────
    # GENERATION
    # ─────────────────────────────────────────────

    async def submit(
        self,
        owner_id: str,
        kind: str,
        input_refs: List[str],
        product_name: str,
        product_type: str,
        prompt: Optional[str] = None,
        retry_of: Optional[str] = None,
    ) -> JobOutcome:
        if kind not in JobKind.GENERATION:
            raise ValidationError(f"Unsupported job kind: {kind}")
        product_name = (product_name or "").strip()
        product_type = (product_type or "").strip()
        refs = [r.strip() for r in (input_refs or []) if isinstance(r, str) and r.strip()]
        if not product_name or not product_type:
            raise ValidationError("product_name and product_type are required")
        if not refs:
            raise ValidationError("At least one input image is required")

        snapshot = await self.pricing.snapshot()
        job_id = str(uuid.uuid4())
        label = JOB_LABELS[kind]

        async def _charge_and_create(db: AsyncSession):
            discounted = False
            if retry_of:
                source = await _load_owned_job(db, owner_id, retry_of, lock=True)
                if source.kind != kind:
                    raise ValidationError("A retry must be of the same kind as the original job")
                if source.status != JobStatus.COMPLETED:
                    raise ValidationError("Only a completed job can be retried at the discounted price")
                if source.retry_used:
                    raise ConflictError("The discounted retry for this job was already used")
                source.retry_used = True
                discounted = True

            cost = snapshot.cost(RETRY_COST_KEYS[kind] if discounted else STANDARD_COST_KEYS[kind])
            description = f"{label}{' retry' if discounted else ''}: {product_name}"
            charged = await ledger_service.charge(db, owner_id, cost, description, ref_id=job_id)

            db.add(Job(
                id=job_id,
                owner_id=owner_id,
                kind=kind,
                status=JobStatus.PENDING,
                product_name=product_name,
                product_type=product_type,
                prompt=prompt,
                input_refs=refs,
                outputs=[],
                cost=cost,
                paid_portion=charged.paid_portion,
                bonus_portion=charged.bonus_portion,
                retry_of=retry_of,
                discounted_retry=discounted,
            ))
            return cost

        cost = await run_in_transaction(self.session_factory, _charge_and_create)
        logger.info(f"Job {job_id} ({kind}) created for {owner_id}, cost={cost}, pricing v{snapshot.version}")

        payload = {
            "job_id": job_id,
            "user_id": owner_id,
            "product_name": product_name,
            "product_type": product_type,
            "prompt": prompt,
            "images": refs,
            "image_count": len(refs),
        }
        outputs = await self._dispatch(job_id, label, self.client.generate(payload))
        if not outputs:
            await self._compensate(job_id, "Fulfillment returned no output")
            raise FulfillmentError(f"{label} failed, credits have been returned", refunded=True)

        return await self._complete(job_id, outputs)

    async def _dispatch(self, job_id: str, label: str, call):
        """Await the external call under the deadline; any failure refunds the job."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Job {job_id} timed out after {self.timeout}s")
            refunded = await self._compensate(job_id, "Fulfillment timed out")
            raise FulfillmentError(f"{label} timed out, credits have been returned", {"job_id": job_id}, refunded=refunded)
        except FulfillmentError as e:
            logger.warning(f"Job {job_id} failed: {e.message}")
            refunded = await self._compensate(job_id, e.message)
            raise FulfillmentError(f"{label} failed, credits have been returned", {"job_id": job_id, "reason": e.message}, refunded=refunded)
        except asyncio.CancelledError:
            logger.warning(f"Job {job_id} cancelled during fulfillment")
            await asyncio.shield(self._compensate(job_id, "Cancelled"))
            raise
        except Exception as e:
            logger.exception(f"Job {job_id} crashed during fulfillment: {e}")
            refunded = await self._compensate(job_id, f"Unexpected error: {e}")
            raise FulfillmentError(f"{label} failed, credits have been returned", {"job_id": job_id}, refunded=refunded)

    async def _compensate(self, job_id: str, reason: str) -> bool:
        try:
            return await self.fail_job(job_id, reason)
        except StoreError:
            # Job stays PENDING; the reaper retries the refund later.
            logger.error(f"REFUND NOT WRITTEN for job {job_id} ({reason}); left PENDING for the reaper")
            raise

    async def _complete(self, job_id: str, outputs: List[str]) -> JobOutcome:
        async def _finish(db: AsyncSession):
            now = utcnow()
            res = await db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PENDING)
                .values(status=JobStatus.COMPLETED, outputs=list(outputs), finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            job = await _load_job(db, job_id)
            if res.rowcount == 0:
                return job, None
            return job, await ledger_service.get_balance(db, job.owner_id)

        job, balance = await run_in_transaction(self.session_factory, _finish)
        if balance is None:
            # Reaped while the call was in flight: already FAILED and refunded.
            raise FulfillmentError("The job expired before its result arrived; credits were returned", {"job_id": job_id}, refunded=True)

        logger.info(f"Job {job_id} completed with {len(outputs)} output(s)")
        return JobOutcome(job=job, balance=balance)

    # ─────────────────────────────────────────────
    # COMPENSATION
    # ─────────────────────────────────────────────

    async def fail_job(self, job_id: str, reason: str) -> bool:
        """PENDING -> FAILED plus refund of the recorded portions. False if already terminal."""
        async def _fail(db: AsyncSession) -> bool:
            now = utcnow()
            res = await db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PENDING)
                .values(status=JobStatus.FAILED, error_message=(reason or "")[:1000], finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                return False

            job = await _load_job(db, job_id)
            await ledger_service.refund(
                db,
                job.owner_id,
                job.paid_portion,
                job.bonus_portion,
                f"{JOB_LABELS.get(job.kind, job.kind)} failure refund",
                key=f"job:{job_id}:refund",
                ref_id=job_id,
            )
            await db.execute(delete(EditLease).where(EditLease.holder == job_id))
            if job.discounted_retry and job.retry_of:
                # Hand the discount back to the source job
                await db.execute(
                    update(Job)
                    .where(Job.id == job.retry_of)
                    .values(retry_used=False, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            return True

        failed = await run_in_transaction(self.session_factory, _fail)
        if failed:
            logger.info(f"Job {job_id} FAILED and refunded: {reason}")
        return failed

    async def reap_stale_jobs(self) -> int:
        """Fail + refund jobs stuck PENDING past the deadline (process died mid-call)."""
        cutoff = utcnow() - timedelta(seconds=self.timeout + self.stale_grace)
        async def _stale(db: AsyncSession) -> List[str]:
            rows = await db.execute(
                select(Job.id).where(Job.status == JobStatus.PENDING, Job.created_at < cutoff).order_by(Job.created_at)
            )
            return list(rows.scalars().all())

        stale = await run_in_transaction(self.session_factory, _stale)
        reaped = 0
        for job_id in stale:
            if await self.fail_job(job_id, "Fulfillment deadline exceeded"):
                reaped += 1
        if reaped:
            logger.info(f"Reaped {reaped} stale job(s)")
        return reaped

    # ─────────────────────────────────────────────
    # IN-PLACE EDIT
    # ─────────────────────────────────────────────

    async def _acquire_lease(self, db: AsyncSession, job_id: str, index: int, holder: str) -> None:
        now = utcnow()
        await db.execute(
            delete(EditLease).where(
                EditLease.job_id == job_id,
                EditLease.target_index == index,
                EditLease.expires_at <= now,
            )
        )
        held = await db.execute(
            select(EditLease.id).where(EditLease.job_id == job_id, EditLease.target_index == index)
        )
        if held.scalar_one_or_none() is not None:
            raise ConflictError("This image is already being edited", {"job_id": job_id, "index": index})
        try:
            async with db.begin_nested():
                db.add(EditLease(
                    job_id=job_id,
                    target_index=index,
                    holder=holder,
                    expires_at=now + timedelta(seconds=self.lease_seconds),
                ))
                await db.flush()
        except IntegrityError:
            raise ConflictError("This image is already being edited", {"job_id": job_id, "index": index})

    async def _release_lease(self, job_id: str, index: int, holder: str) -> None:
        async def _release(db: AsyncSession):
            await db.execute(
                delete(EditLease).where(
                    EditLease.job_id == job_id,
                    EditLease.target_index == index,
                    EditLease.holder == holder,
                )
            )

        try:
            await run_in_transaction(self.session_factory, _release)
        except StoreError:
            logger.warning(f"Could not release edit lease {job_id}#{index}; it expires on its own")

    async def edit(
        self,
        owner_id: str,
        job_id: str,
        target_index: int,
        prompt: str,
        original_ref: Optional[str] = None,
    ) -> JobOutcome:
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValidationError("An edit prompt is required")
        if target_index is None or target_index < 0:
            raise ValidationError("Invalid image index")

        snapshot = await self.pricing.snapshot()
        edit_id = str(uuid.uuid4())

        async def _reserve(db: AsyncSession) -> Dict[str, Any]:
            parent = await _load_owned_job(db, owner_id, job_id)
            if parent.kind not in JobKind.GENERATION:
                raise ValidationError("Only generated images can be edited")
            if parent.status != JobStatus.COMPLETED:
                raise ValidationError("Only a completed job can be edited")
            outputs = list(parent.outputs or [])
            if target_index >= len(outputs):
                raise ValidationError("Image index out of range", {"index": target_index, "count": len(outputs)})

            await self._acquire_lease(db, job_id, target_index, edit_id)

            cost = snapshot.cost(prices.IMAGE_EDIT_COST)
            charged = await ledger_service.charge(
                db, owner_id, cost, f"Image edit: {parent.product_name} #{target_index + 1}", ref_id=edit_id
            )
            source_ref = original_ref or outputs[target_index]
            db.add(Job(
                id=edit_id,
                owner_id=owner_id,
                kind=JobKind.IMAGE_EDIT,
                status=JobStatus.PENDING,
                product_name=parent.product_name,
                product_type=parent.product_type,
                prompt=prompt,
                input_refs=[source_ref],
                outputs=[],
                cost=cost,
                paid_portion=charged.paid_portion,
                bonus_portion=charged.bonus_portion,
                parent_id=job_id,
                target_index=target_index,
            ))
            return {"cost": cost, "source_ref": source_ref}

        reserved = await run_in_transaction(self.session_factory, _reserve)
        logger.info(f"Edit {edit_id} of {job_id}#{target_index} started for {owner_id}, cost={reserved['cost']}")

        try:
            payload = {
                "image": reserved["source_ref"],
                "content": prompt,
                "user_id": owner_id,
                "generation_id": job_id,
                "image_index": target_index,
                "edit_id": edit_id,
            }
            new_ref = await self._dispatch(edit_id, JOB_LABELS[JobKind.IMAGE_EDIT], self.client.edit(payload))
            return await self._complete_edit(edit_id, job_id, target_index, new_ref)
        finally:
            await self._release_lease(job_id, target_index, edit_id)

    async def _complete_edit(self, edit_id: str, parent_id: str, index: int, new_ref: str) -> JobOutcome:
        async def _finish(db: AsyncSession):
            now = utcnow()
            res = await db.execute(
                update(Job)
                .where(Job.id == edit_id, Job.status == JobStatus.PENDING)
                .values(status=JobStatus.COMPLETED, outputs=[new_ref], finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                return None

            parent = await _load_job(db, parent_id, lock=True)
            outputs = list(parent.outputs or [])
            if index < len(outputs):
                outputs[index] = new_ref
            parent.outputs = outputs
            parent.updated_at = now
            await db.flush()
            return parent, await ledger_service.get_balance(db, parent.owner_id)

        finished = await run_in_transaction(self.session_factory, _finish)
        if finished is None:
            raise FulfillmentError("The edit expired before its result arrived; credits were returned", {"job_id": edit_id}, refunded=True)

        parent, balance = finished
        logger.info(f"Edit {edit_id} replaced {parent_id}#{index}")
        return JobOutcome(job=parent, balance=balance)

    # ─────────────────────────────────────────────
    # WATERMARK UNLOCK
    # ─────────────────────────────────────────────

    async def unlock_watermark(self, owner_id: str, job_id: str) -> Dict[str, Any]:
        snapshot = await self.pricing.snapshot()

        async def _unlock(db: AsyncSession) -> Dict[str, Any]:
            job = await _load_owned_job(db, owner_id, job_id, lock=True)
            if job.status != JobStatus.COMPLETED:
                raise ValidationError("Only a completed job can be unlocked")
            if job.watermark_unlocked:
                balance = await ledger_service.get_balance(db, owner_id)
                return {"already_unlocked": True, "charged": 0, "balance": balance}

            cost = snapshot.cost(prices.WATERMARK_UNLOCK_COST)
            charged = await ledger_service.charge(
                db, owner_id, cost, f"Unlock watermark: {job.product_name}",
                kind=LedgerKind.SERVICE_UNLOCK, ref_id=job_id,
            )
            job.watermark_unlocked = True
            job.updated_at = utcnow()
            return {"already_unlocked": False, "charged": cost, "balance": charged.balance}

        result = await run_in_transaction(self.session_factory, _unlock)
        if not result["already_unlocked"]:
            logger.info(f"Watermark unlocked on {job_id} for {owner_id} ({result['charged']} credits)")
        return result

    # ─────────────────────────────────────────────
    # QUERIES
    # ─────────────────────────────────────────────

    async def get_job(self, owner_id: str, job_id: str) -> JobOutcome:
        async with self.session_factory() as db:
            job = await _load_owned_job(db, owner_id, job_id)
            marks = await editing_indexes(db, job_id)
            balance = await ledger_service.get_balance(db, owner_id)
        return JobOutcome(job=job, balance=balance, editing_indexes=marks)

    async def list_jobs(
        self,
        owner_id: str,
        query: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        limit = max(1, min(limit, 100))
        offset = max(0, offset)

        filters = [Job.owner_id == owner_id, Job.kind.in_(JobKind.GENERATION)]
        if query and query.strip():
            filters.append(Job.product_name.contains(query.strip()))
        if status:
            filters.append(Job.status == status.upper())

        async with self.session_factory() as db:
            total = (await db.execute(select(func.count(Job.id)).where(*filters))).scalar() or 0
            rows = await db.execute(
                select(Job).where(*filters).order_by(Job.created_at.desc()).offset(offset).limit(limit)
            )
            jobs = list(rows.scalars().all())

            marks: Dict[str, List[int]] = {}
            if jobs:
                lease_rows = await db.execute(
                    select(EditLease.job_id, EditLease.target_index).where(
                        EditLease.job_id.in_([j.id for j in jobs]),
                        EditLease.expires_at > utcnow(),
                    )
                )
                for jid, idx in lease_rows.all():
                    marks.setdefault(jid, []).append(idx)

        return {
            "items": [(j, sorted(marks.get(j.id, []))) for j in jobs],
            "page": {"limit": limit, "offset": offset, "total": total, "has_more": offset + len(jobs) < total},
        }


class JobReaper:
    """Background tick that calls ``reap_stale_jobs``."""

    def __init__(self, manager: JobManager, tick_seconds: float = JOB_REAPER_TICK_SECONDS):
        self.manager = manager
        self.tick_seconds = tick_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="job-reaper")
        logger.info(f"Job reaper started (tick {self.tick_seconds}s)")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Job reaper stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.manager.reap_stale_jobs()
            except StoreError as e:
                logger.warning(f"Reaper tick skipped: {e.message}")
            except Exception as e:
                logger.exception(f"Reaper tick crashed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
