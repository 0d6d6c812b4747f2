"""
Database models for accounts, quota plans and reconciliation bookkeeping.
"""

from entitlement_engine.models.base import TimestampMixin
from entitlement_engine.models.account import (
    Account,
    Tier,
    Track,
    plan_name_for,
)
from entitlement_engine.models.quota_plan import QuotaPlan
from entitlement_engine.models.processed_event import (
    ProcessedBillingEvent,
    ProcessedDepositEvent,
    SelfCancellation,
)
from entitlement_engine.models.job_lock import JobLock, ChainCursor

__all__ = [
    "TimestampMixin",
    "Account",
    "Tier",
    "Track",
    "plan_name_for",
    "QuotaPlan",
    "ProcessedBillingEvent",
    "ProcessedDepositEvent",
    "SelfCancellation",
    "JobLock",
    "ChainCursor",
]
