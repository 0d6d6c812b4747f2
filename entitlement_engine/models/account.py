"""
Account model: one row per end user.

Holds the two independent entitlement tracks (REST API and RPC/MultiNode),
their quotas and plan end dates, the billing and wallet linkage, and the
referral bookkeeping.

CRITICAL: tier, request limit, plan end date and subscription ref columns
are written only by the reconciliation engine (processors and sweeps).
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, Numeric, Index
)

from entitlement_engine.db_base import Base
from entitlement_engine.models.base import TimestampMixin, generate_uuid


class Track(str, enum.Enum):
    """Entitlement track. Each account holds one tier per track."""
    API = "api"
    RPC = "rpc"


class Tier(str, enum.Enum):
    """Service levels. NONE means the quota is deprovisioned."""
    FREE = "Free"
    STARTER = "Starter"
    GROWTH = "Growth"
    BUSINESS = "Business"
    ENTERPRISE = "Enterprise"
    NONE = "None"


TIER_VALUES = tuple(t.value for t in Tier)

# Shared column type so every tier column maps to one database enum
TierType = Enum(*TIER_VALUES, name="account_tier")

# Usage plans on the RPC track are published under "<Tier> Archival MultiNode"
RPC_PLAN_SUFFIX = " Archival MultiNode"


def plan_name_for(track: Track, tier: Tier) -> Optional[str]:
    """
    External usage-plan name for a tier on a track.

    Returns None for Tier.NONE, which has no plan.
    """
    tier = Tier(tier)
    if tier == Tier.NONE:
        return None
    if Track(track) == Track.RPC:
        return f"{tier.value}{RPC_PLAN_SUFFIX}"
    return tier.value


def generate_referral_code() -> str:
    """Eight hex characters, unique enough to retry on collision."""
    return uuid.uuid4().hex[:8]


class Account(Base, TimestampMixin):
    """
    Per-account entitlement state.

    Track-specific columns are named "<track>_<field>"; use the accessor
    methods rather than building column names by hand.
    """

    __tablename__ = "accounts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    # Identity and external references
    email = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Contact address for notices"
    )
    wallet_address = Column(
        String(42),
        nullable=True,
        unique=True,
        comment="Lower-cased EVM wallet address"
    )
    billing_customer_ref = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Billing platform customer id"
    )
    github_id = Column(String(255), nullable=True, unique=True)
    google_id = Column(String(255), nullable=True, unique=True)
    partner_ref = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Externally provisioned partner id"
    )
    partner_plan = Column(
        String(100),
        nullable=True,
        comment="Plan the partner last provisioned"
    )
    external_api_key_ref = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Opaque id of the provisioned access key"
    )

    # REST API track
    api_tier = Column(
        TierType,
        nullable=False,
        default=Tier.FREE.value
    )
    api_request_count = Column(Integer, nullable=False, default=0)
    api_request_limit = Column(Integer, nullable=False, default=0)
    api_plan_end_date = Column(DateTime(timezone=True), nullable=True)
    api_subscription_ref = Column(
        String(255),
        nullable=True,
        comment="Current billing subscription on the API track"
    )
    api_association_pending_from = Column(
        TierType,
        nullable=True,
        comment="Set while the usage-plan association lags the persisted tier"
    )

    # RPC / MultiNode track
    rpc_tier = Column(
        TierType,
        nullable=False,
        default=Tier.FREE.value
    )
    rpc_request_count = Column(Integer, nullable=False, default=0)
    rpc_request_limit = Column(Integer, nullable=False, default=0)
    rpc_plan_end_date = Column(DateTime(timezone=True), nullable=True)
    rpc_subscription_ref = Column(
        String(255),
        nullable=True,
        comment="Current billing subscription on the RPC track"
    )
    rpc_association_pending_from = Column(
        TierType,
        nullable=True,
        comment="Set while the usage-plan association lags the persisted tier"
    )

    # Referrals
    referral_code = Column(
        String(16),
        nullable=False,
        unique=True,
        default=generate_referral_code,
        comment="Immutable code other users sign up with"
    )
    referrer_code = Column(
        String(16),
        nullable=True,
        comment="Code used at signup; set once, never overwritten"
    )
    referral_points = Column(
        Numeric(18, 4),
        nullable=False,
        default=Decimal("0")
    )

    trial_notice_sent_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_accounts_api_tier", "api_tier"),
        Index("ix_accounts_rpc_tier", "rpc_tier"),
    )

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id}, api_tier={self.api_tier}, "
            f"rpc_tier={self.rpc_tier})>"
        )

    # Track accessors

    def _column(self, track: Track, field: str) -> str:
        return f"{Track(track).value}_{field}"

    def tier_for(self, track: Track) -> Tier:
        value = getattr(self, self._column(track, "tier"))
        return Tier(value) if value is not None else Tier.FREE

    def set_tier(self, track: Track, tier: Tier) -> None:
        setattr(self, self._column(track, "tier"), Tier(tier).value)

    def request_limit_for(self, track: Track) -> int:
        return getattr(self, self._column(track, "request_limit")) or 0

    def set_request_limit(self, track: Track, limit: int) -> None:
        setattr(self, self._column(track, "request_limit"), int(limit))

    def request_count_for(self, track: Track) -> int:
        return getattr(self, self._column(track, "request_count")) or 0

    def set_request_count(self, track: Track, count: int) -> None:
        setattr(self, self._column(track, "request_count"), int(count))

    def plan_end_date_for(self, track: Track) -> Optional[datetime]:
        return getattr(self, self._column(track, "plan_end_date"))

    def set_plan_end_date(self, track: Track, value: Optional[datetime]) -> None:
        setattr(self, self._column(track, "plan_end_date"), value)

    def subscription_ref_for(self, track: Track) -> Optional[str]:
        return getattr(self, self._column(track, "subscription_ref"))

    def set_subscription_ref(self, track: Track, ref: Optional[str]) -> None:
        setattr(self, self._column(track, "subscription_ref"), ref)

    def association_pending_from(self, track: Track) -> Optional[Tier]:
        value = getattr(self, self._column(track, "association_pending_from"))
        return Tier(value) if value is not None else None

    def mark_association_pending(self, track: Track, previous_tier: Tier) -> None:
        """
        Record that the usage-plan association still points at previous_tier.

        An earlier unresolved marker wins: the key is still associated with
        whatever the oldest pending tier was.
        """
        column = self._column(track, "association_pending_from")
        if getattr(self, column) is None:
            setattr(self, column, Tier(previous_tier).value)

    def clear_association_pending(self, track: Track) -> None:
        setattr(self, self._column(track, "association_pending_from"), None)

    @property
    def contact(self) -> Optional[str]:
        return self.email
