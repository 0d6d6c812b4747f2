"""
QuotaPlan model: reference data for externally enforced usage plans.

Plans are global and rarely mutated. The plan name is the lookup key
("Starter", "Starter Archival MultiNode", ...); the external plan id is the
usage-plan id at the enforcement backend.
"""

from sqlalchemy import Column, String, Integer, Numeric, Text

from entitlement_engine.db_base import Base
from entitlement_engine.models.base import TimestampMixin, generate_uuid


class QuotaPlan(Base, TimestampMixin):
    """Published quota numbers for a usage plan."""

    __tablename__ = "quota_plans"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    name = Column(
        String(100),
        nullable=False,
        unique=True,
        comment="Plan name, e.g. 'Growth' or 'Growth Archival MultiNode'"
    )
    external_plan_id = Column(
        String(100),
        nullable=False,
        unique=True,
        comment="Usage plan id at the enforcement backend"
    )
    description = Column(Text, nullable=True)

    requests_per_month = Column(
        Integer,
        nullable=True,
        comment="Monthly request quota; becomes the account request limit"
    )
    requests_per_second = Column(Integer, nullable=True)
    burst_requests_per_second = Column(Integer, nullable=True)

    price_monthly = Column(Numeric(10, 2), nullable=True)
    price_yearly = Column(Numeric(10, 2), nullable=True)

    def __repr__(self) -> str:
        return f"<QuotaPlan(name={self.name}, requests_per_month={self.requests_per_month})>"
