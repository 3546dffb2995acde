# FILE: storefront/services/watermark_queue.py
# =========================================================
# Watermark removal: batch submission + FIFO queue worker
# =========================================================

"""
Submission charges the whole batch once and writes one PENDING row per image.
The worker claims the oldest PENDING rows (PENDING -> PROCESSING by
conditional update, so two workers never process the same row), calls the
watermark API, and settles each row on its own. A row that fails its last
attempt refunds its own share of the batch charge exactly once.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlparse

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import (
    WATERMARK_WORKER_CONCURRENCY,
    WATERMARK_TICK_SECONDS,
    WATERMARK_TASK_TIMEOUT_SECONDS,
    WATERMARK_MAX_ATTEMPTS,
    WATERMARK_MAX_BATCH,
    WATERMARK_REFUND_ON_FAILURE,
)
from storefront.core.database import utcnow
from storefront.core.errors import FulfillmentError, StoreError, ValidationError
from storefront.core.retry import run_in_transaction
from storefront.models.watermark_task import WatermarkTask, TaskStatus
from storefront.services import ledger_service
from storefront.services import pricing_service as prices

logger = logging.getLogger("storefront.watermark")


def is_valid_asset_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def split_batch_charge(unit_cost: int, count: int, bonus_total: int) -> List[Dict[str, int]]:
    """Per-task (paid, bonus) shares; bonus goes to the earliest tasks first."""
    shares = []
    bonus_left = bonus_total
    for _ in range(count):
        bonus = min(unit_cost, bonus_left)
        bonus_left -= bonus
        shares.append({"paid": unit_cost - bonus, "bonus": bonus})
    return shares


# ─────────────────────────────────────────────
# SUBMISSION / QUERIES
# ─────────────────────────────────────────────

class WatermarkQueue:
    def __init__(self, session_factory: async_sessionmaker, pricing, worker: Optional["WatermarkWorker"] = None,
                 max_batch: int = WATERMARK_MAX_BATCH):
        self.session_factory = session_factory
        self.pricing = pricing
        self.worker = worker
        self.max_batch = max_batch

    async def submit(self, owner_id: str, refs: List[str]) -> Dict[str, Any]:
        if not isinstance(refs, list) or not refs:
            raise ValidationError("Provide a list of image URLs")
        valid = [r.strip() for r in refs if is_valid_asset_url(r)]
        if not valid:
            raise ValidationError("Provide at least one valid image URL")
        if len(valid) > self.max_batch:
            raise ValidationError(f"At most {self.max_batch} images per submission", {"count": len(valid)})

        snapshot = await self.pricing.snapshot()
        unit_cost = snapshot.cost(prices.WATERMARK_REMOVE_COST)
        total_cost = unit_cost * len(valid)
        batch_id = str(uuid.uuid4())

        async def _charge_and_enqueue(db: AsyncSession) -> Dict[str, Any]:
            charged = await ledger_service.charge(
                db, owner_id, total_cost, f"Watermark removal: {len(valid)} image(s)", ref_id=batch_id
            )
            now = utcnow()
            tasks = []
            for url, share in zip(valid, split_batch_charge(unit_cost, len(valid), charged.bonus_portion)):
                task = WatermarkTask(
                    owner_id=owner_id,
                    batch_id=batch_id,
                    original_ref=url,
                    status=TaskStatus.PENDING,
                    paid_portion=share["paid"],
                    bonus_portion=share["bonus"],
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
                db.add(task)
                tasks.append(task)
            await db.flush()
            return {"task_ids": [t.id for t in tasks], "balance": charged.balance}

        result = await run_in_transaction(self.session_factory, _charge_and_enqueue)
        logger.info(f"Batch {batch_id}: {len(valid)} watermark task(s) for {owner_id}, charged {total_cost}")

        if self.worker:
            self.worker.trigger()

        return {
            "batch_id": batch_id,
            "task_ids": result["task_ids"],
            "cost": total_cost,
            "balance": result["balance"],
        }

    async def queue_status(self, owner_id: str) -> Dict[str, int]:
        async with self.session_factory() as db:
            counts = await db.execute(
                select(WatermarkTask.status, func.count(WatermarkTask.id))
                .where(WatermarkTask.status.in_([TaskStatus.PENDING, TaskStatus.PROCESSING]))
                .group_by(WatermarkTask.status)
            )
            by_status = dict(counts.all())
            pending = int(by_status.get(TaskStatus.PENDING, 0))
            processing = int(by_status.get(TaskStatus.PROCESSING, 0))

            earliest = (
                await db.execute(
                    select(WatermarkTask)
                    .where(
                        WatermarkTask.owner_id == owner_id,
                        WatermarkTask.status.in_([TaskStatus.PENDING, TaskStatus.PROCESSING]),
                    )
                    .order_by(WatermarkTask.created_at, WatermarkTask.id)
                    .limit(1)
                )
            ).scalar_one_or_none()

            position = 0
            if earliest is not None and earliest.status == TaskStatus.PENDING:
                position = (
                    await db.execute(
                        select(func.count(WatermarkTask.id)).where(
                            WatermarkTask.status == TaskStatus.PENDING,
                            or_(
                                WatermarkTask.created_at < earliest.created_at,
                                and_(WatermarkTask.created_at == earliest.created_at, WatermarkTask.id < earliest.id),
                            ),
                        )
                    )
                ).scalar() or 0

        return {
            "pending_count": pending,
            "processing_count": processing,
            "queue_position": int(position),
            "total_waiting": pending + processing,
        }

    async def history(self, owner_id: str, limit: int = 50) -> List[WatermarkTask]:
        limit = max(1, min(limit, 200))
        async with self.session_factory() as db:
            rows = await db.execute(
                select(WatermarkTask)
                .where(WatermarkTask.owner_id == owner_id)
                .order_by(WatermarkTask.created_at.desc(), WatermarkTask.id.desc())
                .limit(limit)
            )
            return list(rows.scalars().all())


# ─────────────────────────────────────────────
# WORKER
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class ClaimedTask:
    id: int
    owner_id: str
    original_ref: str
    remote_task_id: Optional[str]
    attempts: int


class WatermarkWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        client,
        concurrency: int = WATERMARK_WORKER_CONCURRENCY,
        tick_seconds: float = WATERMARK_TICK_SECONDS,
        task_timeout: float = WATERMARK_TASK_TIMEOUT_SECONDS,
        max_attempts: int = WATERMARK_MAX_ATTEMPTS,
        refund_on_failure: bool = WATERMARK_REFUND_ON_FAILURE,
    ):
        self.session_factory = session_factory
        self.client = client
        self.concurrency = max(1, concurrency)
        self.tick_seconds = tick_seconds
        self.task_timeout = task_timeout
        self.max_attempts = max(1, max_attempts)
        self.refund_on_failure = refund_on_failure

        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._active_ids: Set[int] = set()

    # ---------- lifecycle ----------

    def trigger(self) -> None:
        """Wake the loop. Safe to call any number of times."""
        self._wake.set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._run(), name="watermark-worker")
        logger.info(f"Watermark worker started (concurrency={self.concurrency}, tick={self.tick_seconds}s)")

    async def stop(self) -> None:
        self._stopping.set()
        self._wake.set()
        if self._loop_task:
            await self._loop_task
            self._loop_task = None
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Watermark worker stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.recover_stale()
                await self.drain_once()
            except StoreError as e:
                logger.warning(f"Worker tick skipped: {e.message}")
            except Exception as e:
                logger.exception(f"Worker tick crashed: {e}")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    # ---------- claiming ----------

    async def claim(self, limit: int) -> List[ClaimedTask]:
        """Move up to ``limit`` oldest PENDING tasks to PROCESSING."""
        if limit <= 0:
            return []

        async def _claim(db: AsyncSession) -> List[ClaimedTask]:
            rows = await db.execute(
                select(WatermarkTask.id)
                .where(WatermarkTask.status == TaskStatus.PENDING)
                .order_by(WatermarkTask.created_at, WatermarkTask.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            claimed = []
            now = utcnow()
            for task_id in rows.scalars().all():
                res = await db.execute(
                    update(WatermarkTask)
                    .where(WatermarkTask.id == task_id, WatermarkTask.status == TaskStatus.PENDING)
                    .values(status=TaskStatus.PROCESSING, attempts=WatermarkTask.attempts + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    continue
                row = (
                    await db.execute(
                        select(WatermarkTask.owner_id, WatermarkTask.original_ref,
                               WatermarkTask.remote_task_id, WatermarkTask.attempts)
                        .where(WatermarkTask.id == task_id)
                    )
                ).one()
                claimed.append(ClaimedTask(
                    id=task_id, owner_id=row.owner_id, original_ref=row.original_ref,
                    remote_task_id=row.remote_task_id, attempts=row.attempts,
                ))
            return claimed

        claimed = await run_in_transaction(self.session_factory, _claim)
        for task in claimed:
            logger.info(f"Claimed watermark task {task.id} (attempt {task.attempts}/{self.max_attempts})")
        return claimed

    async def drain_once(self) -> int:
        """Claim as many tasks as there are free slots and start them."""
        free = self.concurrency - len(self._inflight)
        claimed = await self.claim(free)
        for task in claimed:
            self._active_ids.add(task.id)
            runner = asyncio.create_task(self._process(task), name=f"watermark-task-{task.id}")
            self._inflight.add(runner)
            runner.add_done_callback(partial(self._on_done, task.id))
        return len(claimed)

    def _on_done(self, task_id: int, runner: asyncio.Task) -> None:
        self._inflight.discard(runner)
        self._active_ids.discard(task_id)
        self.trigger()

    async def run_until_idle(self) -> None:
        """Drain until nothing is pending or in flight."""
        while True:
            started = await self.drain_once()
            if not self._inflight:
                if started == 0:
                    return
                continue
            await asyncio.wait(set(self._inflight), return_when=asyncio.FIRST_COMPLETED)

    async def recover_stale(self) -> int:
        """Tasks stuck in PROCESSING (worker died mid-call) go back to PENDING or fail."""
        cutoff = utcnow() - timedelta(seconds=self.task_timeout + self.tick_seconds)
        async def _stale(db: AsyncSession):
            rows = await db.execute(
                select(WatermarkTask.id, WatermarkTask.attempts).where(
                    WatermarkTask.status == TaskStatus.PROCESSING,
                    WatermarkTask.updated_at < cutoff,
                )
            )
            return [(tid, attempts) for tid, attempts in rows.all() if tid not in self._active_ids]

        stale = await run_in_transaction(self.session_factory, _stale)

        recovered = 0
        for task_id, attempts in stale:
            if attempts >= self.max_attempts:
                await self._finalize_failure(task_id, "Processing timed out")
            else:
                async def _requeue(db: AsyncSession, task_id=task_id):
                    await db.execute(
                        update(WatermarkTask)
                        .where(WatermarkTask.id == task_id, WatermarkTask.status == TaskStatus.PROCESSING,
                               WatermarkTask.updated_at < cutoff)
                        .values(status=TaskStatus.PENDING, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                await run_in_transaction(self.session_factory, _requeue)
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stale watermark task(s)")
        return recovered

    # ---------- processing ----------

    async def _save_remote_id(self, task_id: int, remote_task_id: str) -> None:
        async def _save(db: AsyncSession):
            await db.execute(
                update(WatermarkTask)
                .where(WatermarkTask.id == task_id)
                .values(remote_task_id=remote_task_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        await run_in_transaction(self.session_factory, _save)

    async def _process(self, task: ClaimedTask) -> None:
        try:
            try:
                result_ref = await asyncio.wait_for(
                    self.client.remove_watermark(
                        task.original_ref,
                        remote_task_id=task.remote_task_id,
                        on_remote_task=partial(self._save_remote_id, task.id),
                    ),
                    timeout=self.task_timeout,
                )
            except asyncio.TimeoutError:
                await self._record_failure(task, "Processing timed out")
            except FulfillmentError as e:
                await self._record_failure(task, e.message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Watermark task {task.id} crashed: {e}")
                await self._record_failure(task, f"Unexpected error: {e}")
            else:
                await self._complete(task.id, result_ref)
        except StoreError as e:
            # Row stays PROCESSING; recover_stale picks it up after the timeout.
            logger.error(f"Could not settle watermark task {task.id}: {e.message}")

    async def _complete(self, task_id: int, result_ref: str) -> None:
        async def _done(db: AsyncSession) -> int:
            res = await db.execute(
                update(WatermarkTask)
                .where(WatermarkTask.id == task_id, WatermarkTask.status == TaskStatus.PROCESSING)
                .values(status=TaskStatus.COMPLETED, result_ref=result_ref, error_message=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return res.rowcount

        if await run_in_transaction(self.session_factory, _done):
            logger.info(f"Watermark task {task_id} completed")

    async def _record_failure(self, task: ClaimedTask, message: str) -> None:
        if task.attempts >= self.max_attempts:
            await self._finalize_failure(task.id, message)
            return

        async def _requeue(db: AsyncSession):
            await db.execute(
                update(WatermarkTask)
                .where(WatermarkTask.id == task.id, WatermarkTask.status == TaskStatus.PROCESSING)
                .values(status=TaskStatus.PENDING, error_message=message[:1000], updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        await run_in_transaction(self.session_factory, _requeue)
        logger.warning(f"Watermark task {task.id} attempt {task.attempts} failed, requeued: {message}")

    async def _finalize_failure(self, task_id: int, message: str) -> bool:
        """FAILED + refund of this task's share, at most once per task."""
        async def _fail(db: AsyncSession) -> bool:
            now = utcnow()
            values = {"status": TaskStatus.FAILED, "error_message": message[:1000], "updated_at": now}
            if self.refund_on_failure:
                values["refunded_at"] = now
            res = await db.execute(
                update(WatermarkTask)
                .where(
                    WatermarkTask.id == task_id,
                    WatermarkTask.status.in_([TaskStatus.PENDING, TaskStatus.PROCESSING]),
                    WatermarkTask.refunded_at.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                return False
            if not self.refund_on_failure:
                return True

            row = (
                await db.execute(
                    select(WatermarkTask.owner_id, WatermarkTask.paid_portion, WatermarkTask.bonus_portion)
                    .where(WatermarkTask.id == task_id)
                )
            ).one()
            await ledger_service.refund(
                db, row.owner_id, row.paid_portion, row.bonus_portion,
                "Watermark removal failure refund",
                key=f"watermark:{task_id}:refund",
                ref_id=str(task_id),
            )
            return True

        failed = await run_in_transaction(self.session_factory, _fail)
        if failed:
            logger.info(f"Watermark task {task_id} FAILED: {message}")
        return failed
