"""
Event log repository: durable idempotency records and job coordination.

Records are added to the caller's transaction and committed together with
the ledger change they guard. The unique constraints on the tables are the
final arbiter across processes; the existence checks here are the fast path.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_engine.models.base import utcnow
from entitlement_engine.models.job_lock import JobLock, ChainCursor
from entitlement_engine.models.processed_event import (
    ProcessedBillingEvent,
    ProcessedDepositEvent,
    SelfCancellation,
)

logger = logging.getLogger(__name__)


class EventLogRepository:
    """Processed-event records and self-cancellation bookkeeping."""

    def __init__(self, db_session: Session):
        self.db = db_session

    # Billing events

    def is_billing_event_processed(self, event_id: str) -> bool:
        """
        Check if a billing event id has already been handled.

        Args:
            event_id: Billing platform event id

        Returns:
            True if duplicate, False otherwise
        """
        existing = self.db.query(ProcessedBillingEvent).filter(
            ProcessedBillingEvent.event_id == event_id
        ).first()
        return existing is not None

    def record_billing_event(
        self,
        event_id: str,
        kind: str,
        outcome: str,
        customer_ref: Optional[str] = None,
        subscription_ref: Optional[str] = None,
    ) -> ProcessedBillingEvent:
        record = ProcessedBillingEvent(
            event_id=event_id,
            kind=kind,
            outcome=outcome,
            customer_ref=customer_ref,
            subscription_ref=subscription_ref,
            processed_at=utcnow(),
        )
        self.db.add(record)
        return record

    # Deposit events

    def is_deposit_processed(self, transaction_hash: str, log_index: int) -> bool:
        existing = self.db.query(ProcessedDepositEvent).filter(
            ProcessedDepositEvent.transaction_hash == transaction_hash.lower(),
            ProcessedDepositEvent.log_index == log_index,
        ).first()
        return existing is not None

    def record_deposit(
        self,
        transaction_hash: str,
        log_index: int,
        wallet_address: str,
        track: str,
        account_id: Optional[str] = None,
    ) -> ProcessedDepositEvent:
        record = ProcessedDepositEvent(
            transaction_hash=transaction_hash.lower(),
            log_index=log_index,
            wallet_address=wallet_address.lower(),
            track=track,
            account_id=account_id,
            processed_at=utcnow(),
        )
        self.db.add(record)
        return record

    # Self-cancellations

    def record_self_cancellation(
        self,
        subscription_ref: str,
        account_id: str,
        track: str,
        replaced_by_ref: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> SelfCancellation:
        """
        Remember a subscription the engine is about to cancel itself.

        The record must be committed before the cancellation call so the
        deletion event it triggers is recognized no matter how fast it
        arrives.
        """
        existing = self.db.query(SelfCancellation).filter(
            SelfCancellation.subscription_ref == subscription_ref
        ).first()
        if existing is not None:
            return existing

        record = SelfCancellation(
            subscription_ref=subscription_ref,
            account_id=account_id,
            track=track,
            replaced_by_ref=replaced_by_ref,
            reason=reason,
            created_at=utcnow(),
        )
        self.db.add(record)
        return record

    def consume_self_cancellation(self, subscription_ref: Optional[str]) -> bool:
        """
        Mark a pending self-cancellation as consumed.

        Returns:
            True if the subscription was cancelled by the engine and the
            record had not been consumed yet
        """
        if not subscription_ref:
            return False
        record = self.db.query(SelfCancellation).filter(
            SelfCancellation.subscription_ref == subscription_ref,
            SelfCancellation.consumed_at.is_(None),
        ).first()
        if record is None:
            return False
        record.consumed_at = utcnow()
        return True


class JobLeaseRepository:
    """
    Durable per-job leases.

    acquire() succeeds when no row exists, when the existing lease has
    expired, or when the caller already owns it. Both paths are single
    statements so two processes racing for the same job cannot both win.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def acquire(self, job_name: str, owner: str, lease_seconds: int) -> bool:
        now = utcnow()
        until = now + timedelta(seconds=lease_seconds)

        result = self.db.execute(
            update(JobLock)
            .where(JobLock.job_name == job_name)
            .where(
                (JobLock.locked_until.is_(None))
                | (JobLock.locked_until < now)
                | (JobLock.owner == owner)
            )
            .values(owner=owner, locked_at=now, locked_until=until)
        )
        if result.rowcount == 1:
            self.db.commit()
            return True

        exists = self.db.query(JobLock).filter(JobLock.job_name == job_name).first()
        if exists is not None:
            logger.info("Job lease held elsewhere", extra={
                "job_name": job_name,
                "holder": exists.owner,
                "locked_until": exists.locked_until.isoformat() if exists.locked_until else None,
            })
            self.db.rollback()
            return False

        try:
            self.db.add(JobLock(job_name=job_name, owner=owner, locked_at=now, locked_until=until))
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            logger.info("Job lease taken concurrently", extra={"job_name": job_name})
            return False

    def release(self, job_name: str, owner: str) -> None:
        self.db.execute(
            update(JobLock)
            .where(JobLock.job_name == job_name)
            .where(JobLock.owner == owner)
            .values(owner=None, locked_until=None)
        )
        self.db.commit()


class ChainCursorRepository:
    """Last processed block per log subscription."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_cursor(self, name: str, default: int = 0) -> int:
        cursor = self.db.get(ChainCursor, name)
        return cursor.last_block if cursor is not None else default

    def set_cursor(self, name: str, last_block: int) -> None:
        cursor = self.db.get(ChainCursor, name)
        if cursor is None:
            self.db.add(ChainCursor(name=name, last_block=last_block))
        else:
            cursor.last_block = last_block
        self.db.commit()
