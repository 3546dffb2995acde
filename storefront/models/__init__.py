from storefront.models.account import Account, AccountRole
from storefront.models.ledger_entry import LedgerEntry, LedgerKind
from storefront.models.job import Job, JobKind, JobStatus, EditLease
from storefront.models.watermark_task import WatermarkTask, TaskStatus
from storefront.models.appeal import Appeal, AppealStatus
from storefront.models.redemption_code import RedemptionCode, CodeStatus
from storefront.models.system_config import SystemConfig

__all__ = [
    "Account", "AccountRole", "LedgerEntry", "LedgerKind",
    "Job", "JobKind", "JobStatus", "EditLease",
    "WatermarkTask", "TaskStatus", "Appeal", "AppealStatus",
    "RedemptionCode", "CodeStatus", "SystemConfig",
]
