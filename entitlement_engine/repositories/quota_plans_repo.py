"""
Quota Plans Repository.

Quota plans are global reference data: one row per externally enforced
usage plan. The reconciler refreshes them from the gateway; processors read
them to recompute request limits on every tier change.
"""

import logging
from decimal import Decimal
from typing import Optional, List

from sqlalchemy.orm import Session

from entitlement_engine.errors import ConfigurationError
from entitlement_engine.models.account import Tier, Track, plan_name_for
from entitlement_engine.models.quota_plan import QuotaPlan

logger = logging.getLogger(__name__)


class QuotaPlansRepository:
    """Repository for QuotaPlan rows."""

    def __init__(self, db_session: Session):
        """
        Initialize quota plans repository.

        Args:
            db_session: Database session
        """
        self.db = db_session

    def get_by_name(self, name: str) -> Optional[QuotaPlan]:
        return self.db.query(QuotaPlan).filter(QuotaPlan.name == name).first()

    def get_by_external_id(self, external_plan_id: str) -> Optional[QuotaPlan]:
        return self.db.query(QuotaPlan).filter(
            QuotaPlan.external_plan_id == external_plan_id
        ).first()

    def get_all(self) -> List[QuotaPlan]:
        return self.db.query(QuotaPlan).order_by(QuotaPlan.name).all()

    def lookup(self, name: str) -> QuotaPlan:
        """
        Get a plan that can be enforced.

        Args:
            name: Plan name, e.g. "Growth" or "Growth Archival MultiNode"

        Returns:
            QuotaPlan

        Raises:
            ConfigurationError: If the plan is missing or publishes no
                monthly quota
        """
        plan = self.get_by_name(name)
        if plan is None:
            raise ConfigurationError(f"Quota plan not found: {name}")
        if plan.requests_per_month is None:
            raise ConfigurationError(f"Quota plan {name} publishes no monthly quota")
        return plan

    def request_limit_for(self, track: Track, tier: Tier) -> int:
        """
        Monthly request limit for a tier on a track.

        Tier.NONE has no plan and a limit of 0.

        Raises:
            ConfigurationError: If the tier's plan is missing
        """
        name = plan_name_for(track, tier)
        if name is None:
            return 0
        return int(self.lookup(name).requests_per_month)

    def external_plan_id_for(self, plan_name: str) -> str:
        """
        Usage-plan id at the enforcement backend.

        Unlike lookup(), a plan without a monthly quota still resolves; the
        key can be attached to it.

        Raises:
            ConfigurationError: If the plan is missing
        """
        plan = self.get_by_name(plan_name)
        if plan is None:
            raise ConfigurationError(f"Quota plan not found: {plan_name}")
        return plan.external_plan_id

    def upsert(
        self,
        name: str,
        external_plan_id: str,
        requests_per_month: Optional[int] = None,
        requests_per_second: Optional[int] = None,
        burst_requests_per_second: Optional[int] = None,
        description: Optional[str] = None,
        price_monthly: Optional[Decimal] = None,
        price_yearly: Optional[Decimal] = None,
    ) -> QuotaPlan:
        """
        Create or update a plan by name (flushes, does not commit).

        Prices are only overwritten when provided; the gateway does not
        publish them.
        """
        plan = self.get_by_name(name)
        if plan is None:
            plan = QuotaPlan(name=name, external_plan_id=external_plan_id)
            self.db.add(plan)
            logger.info("Quota plan created", extra={
                "plan_name": name,
                "external_plan_id": external_plan_id,
            })

        plan.external_plan_id = external_plan_id
        plan.requests_per_month = requests_per_month
        plan.requests_per_second = requests_per_second
        plan.burst_requests_per_second = burst_requests_per_second
        if description is not None:
            plan.description = description
        if price_monthly is not None:
            plan.price_monthly = price_monthly
        if price_yearly is not None:
            plan.price_yearly = price_yearly

        self.db.flush()
        return plan
