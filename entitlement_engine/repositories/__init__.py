"""Repository layer for accounts, quota plans and event bookkeeping."""

from entitlement_engine.repositories.account_ledger import (
    AccountLedger,
    LedgerError,
    UnknownReferenceKindError,
)
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository
from entitlement_engine.repositories.event_log import (
    EventLogRepository,
    JobLeaseRepository,
    ChainCursorRepository,
)

__all__ = [
    "AccountLedger",
    "LedgerError",
    "UnknownReferenceKindError",
    "QuotaPlansRepository",
    "EventLogRepository",
    "JobLeaseRepository",
    "ChainCursorRepository",
]
