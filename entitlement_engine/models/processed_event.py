"""
Durable idempotency records.

Each inbound event is recorded in the same transaction as the ledger change
it caused. The unique constraints are what make redelivery safe across
process instances; a second insert of the same key fails.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, UniqueConstraint
)

from entitlement_engine.db_base import Base
from entitlement_engine.models.base import generate_uuid


def _now():
    return datetime.now(timezone.utc)


class ProcessedBillingEvent(Base):
    """A billing-platform event id that has been handled."""

    __tablename__ = "processed_billing_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Billing platform event id"
    )
    kind = Column(String(50), nullable=False)
    customer_ref = Column(String(255), nullable=True, index=True)
    subscription_ref = Column(String(255), nullable=True, index=True)
    outcome = Column(
        String(50),
        nullable=False,
        comment="applied, unchanged, duplicate, account_not_found, ..."
    )
    processed_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    def __repr__(self) -> str:
        return f"<ProcessedBillingEvent(event_id={self.event_id}, outcome={self.outcome})>"


class ProcessedDepositEvent(Base):
    """An on-chain deposit log that has been applied."""

    __tablename__ = "processed_deposit_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    transaction_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False, default=0)
    wallet_address = Column(String(42), nullable=False, index=True)
    track = Column(String(10), nullable=False)
    account_id = Column(String(36), nullable=True, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_deposit_tx_log"),
    )


class SelfCancellation(Base):
    """
    A subscription the engine cancelled itself during a plan swap.

    The billing platform later delivers a deletion event for it; that event
    must not tear down the track a second time.
    """

    __tablename__ = "self_cancellations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    subscription_ref = Column(String(255), nullable=False, unique=True)
    account_id = Column(String(36), nullable=False, index=True)
    track = Column(String(10), nullable=False)
    replaced_by_ref = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
