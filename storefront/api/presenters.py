# FILE: storefront/api/presenters.py
"""ORM rows / service results -> response schemas."""
from datetime import datetime, timezone
from typing import List, Optional

from storefront.models.appeal import Appeal
from storefront.models.job import Job
from storefront.models.ledger_entry import LedgerEntry
from storefront.models.watermark_task import WatermarkTask
from storefront.schemas.appeals import AppealJobSummary, AppealResponse
from storefront.schemas.credits import BalanceResponse, LedgerEntryResponse
from storefront.schemas.jobs import JobResponse
from storefront.schemas.watermark import WatermarkTaskResponse
from storefront.services.ledger_service import Balance


def iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def balance_response(balance: Balance) -> BalanceResponse:
    return BalanceResponse(paid=balance.paid, bonus=balance.bonus, total=balance.total)


def ledger_entry_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        amount=entry.amount,
        kind=entry.kind,
        description=entry.description,
        ref_id=entry.ref_id,
        created_at=iso(entry.created_at),
    )


def job_response(job: Job, editing_indexes: Optional[List[int]] = None) -> JobResponse:
    return JobResponse(
        id=job.id,
        kind=job.kind,
        status=job.status,
        product_name=job.product_name,
        product_type=job.product_type,
        outputs=list(job.outputs or []),
        cost=job.cost,
        discounted_retry=bool(job.discounted_retry),
        retry_used=bool(job.retry_used),
        watermark_unlocked=bool(job.watermark_unlocked),
        editing_indexes=list(editing_indexes or []),
        error_message=job.error_message,
        created_at=iso(job.created_at),
    )


def watermark_task_response(task: WatermarkTask) -> WatermarkTaskResponse:
    return WatermarkTaskResponse(
        id=task.id,
        batch_id=task.batch_id,
        original_url=task.original_ref,
        result_url=task.result_ref,
        status=task.status,
        error_message=task.error_message,
        attempts=task.attempts,
        refunded=task.refunded_at is not None,
        created_at=iso(task.created_at),
        updated_at=iso(task.updated_at),
    )


def appeal_response(appeal: Appeal, job: Optional[Job] = None) -> AppealResponse:
    summary = None
    if job is not None:
        summary = AppealJobSummary(
            id=job.id,
            kind=job.kind,
            product_name=job.product_name,
            outputs=list(job.outputs or []),
            cost=job.cost,
        )
    return AppealResponse(
        id=appeal.id,
        job_id=appeal.job_id,
        owner_id=appeal.owner_id,
        status=appeal.status,
        reason=appeal.reason,
        refund_amount=appeal.refund_amount,
        admin_note=appeal.admin_note,
        created_at=iso(appeal.created_at),
        resolved_at=iso(appeal.resolved_at),
        job=summary,
    )
