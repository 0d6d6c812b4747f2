"""
Quota Association Gateway.

Keeps an account's access key attached to exactly the usage plan matching
its tier on a track. Plan names are resolved to external usage-plan ids
through the QuotaPlan table.

Idempotency:
- "already associated" (409 ConflictException) on attach is success
- "already removed" (404 NotFoundException) on detach is success
Anything else is a TransientExternalError and the caller leaves the
association marked pending.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from entitlement_engine.config.settings import EngineSettings, get_settings
from entitlement_engine.errors import ConfigurationError, TransientExternalError
from entitlement_engine.integrations.aws.usage_plan_client import (
    UsagePlanAPIError,
    UsagePlanClient,
)
from entitlement_engine.models.account import Account, Tier, Track, plan_name_for
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository

logger = logging.getLogger(__name__)


@dataclass
class PublishedPlan:
    """A usage plan as published by the enforcement backend."""
    external_plan_id: str
    name: str
    requests_per_month: Optional[int]
    requests_per_second: Optional[int]
    burst_requests_per_second: Optional[int]
    description: Optional[str] = None


def _is_none_plan(plan_name: Optional[str]) -> bool:
    return plan_name is None or plan_name == Tier.NONE.value


class QuotaAssociationGateway:
    """Attach and detach access keys to usage plans."""

    def __init__(self, client: UsagePlanClient, plans: QuotaPlansRepository):
        """
        Initialize gateway.

        Args:
            client: API Gateway wrapper
            plans: Quota plan reference data (plan name -> external id)
        """
        self.client = client
        self.plans = plans

    def _attach(self, key: str, plan_name: str) -> None:
        plan_id = self.plans.external_plan_id_for(plan_name)
        try:
            self.client.create_usage_plan_key(plan_id, key)
        except UsagePlanAPIError as e:
            if e.is_conflict:
                logger.debug("Key already on usage plan", extra={"plan_name": plan_name})
                return
            raise TransientExternalError(str(e), service="quota_gateway") from e

    def _detach(self, key: str, plan_name: str) -> None:
        plan_id = self.plans.external_plan_id_for(plan_name)
        try:
            self.client.delete_usage_plan_key(plan_id, key)
        except UsagePlanAPIError as e:
            if e.is_not_found:
                logger.debug("Key already off usage plan", extra={"plan_name": plan_name})
                return
            raise TransientExternalError(str(e), service="quota_gateway") from e

    def associate(
        self,
        key: str,
        previous_tier_name: Optional[str],
        new_tier_name: Optional[str],
    ) -> None:
        """
        Move a key from one plan to another.

        Args:
            key: Access key id
            previous_tier_name: Plan the key is on now (None/"None" for none)
            new_tier_name: Plan the key should end up on (None/"None" to
                only remove the previous association)

        Raises:
            TransientExternalError: On an infrastructure failure
            ConfigurationError: If a plan name has no QuotaPlan row
        """
        if not _is_none_plan(previous_tier_name) and previous_tier_name != new_tier_name:
            self._detach(key, previous_tier_name)

        if not _is_none_plan(new_tier_name):
            self._attach(key, new_tier_name)

        logger.info("Usage plan association updated", extra={
            "previous_plan": previous_tier_name,
            "new_plan": new_tier_name,
        })

    def disassociate(self, key: str, tier_name: Optional[str]) -> None:
        """Remove a key from a plan; absent association is success."""
        if _is_none_plan(tier_name):
            return
        self._detach(key, tier_name)
        logger.info("Usage plan association removed", extra={"plan_name": tier_name})

    def total_quota_for(self, tier_name: str) -> int:
        """
        Monthly quota the backend enforces for a plan.

        Raises:
            ConfigurationError: If the plan publishes no monthly quota
            TransientExternalError: On an infrastructure failure
        """
        try:
            plan = self.client.get_usage_plan(self.plans.external_plan_id_for(tier_name))
        except UsagePlanAPIError as e:
            raise TransientExternalError(str(e), service="quota_gateway") from e

        limit = (plan.get("quota") or {}).get("limit")
        if limit is None:
            raise ConfigurationError(f"Usage plan {tier_name} has no monthly quota")
        return int(limit)

    def usage_for(self, key: str, tier_name: str, start: date, end: date) -> int:
        """
        Requests made by a key on a plan between two dates (inclusive).

        Sums the "used" half of each day's [used, remaining] pair.
        """
        try:
            response = self.client.get_usage(
                self.plans.external_plan_id_for(tier_name),
                key,
                start.isoformat(),
                end.isoformat(),
            )
        except UsagePlanAPIError as e:
            if e.is_not_found:
                return 0
            raise TransientExternalError(str(e), service="quota_gateway") from e

        days = (response.get("items") or {}).get(key) or []
        return sum(int(day[0]) for day in days if day)

    def create_access_key(self, name: str) -> str:
        """Create an enabled access key and return its id."""
        try:
            response = self.client.create_api_key(name)
        except UsagePlanAPIError as e:
            raise TransientExternalError(str(e), service="quota_gateway") from e
        return response["id"]

    def list_plans(self) -> List[PublishedPlan]:
        """Usage plans currently published by the backend."""
        try:
            items = self.client.get_usage_plans()
        except UsagePlanAPIError as e:
            raise TransientExternalError(str(e), service="quota_gateway") from e

        plans = []
        for item in items:
            quota = item.get("quota") or {}
            throttle = item.get("throttle") or {}
            rate = throttle.get("rateLimit")
            plans.append(PublishedPlan(
                external_plan_id=item["id"],
                name=item["name"],
                requests_per_month=quota.get("limit") if quota.get("period", "MONTH") == "MONTH" else None,
                requests_per_second=int(rate) if rate is not None else None,
                burst_requests_per_second=throttle.get("burstLimit"),
                description=item.get("description"),
            ))
        return plans

    def align(self, account: Account, track: Track) -> bool:
        """
        Bring the external association in line with the account's tier.

        Uses the track's association-pending marker as the "currently
        associated" tier. Clears the marker on success; the caller commits.

        Returns:
            True if the track is aligned, False if the backend call failed or a
            plan is missing and the marker was left in place for a later retry
        """
        previous = account.association_pending_from(track)
        if previous is None:
            return True

        current = account.tier_for(track)
        key = account.external_api_key_ref
        if not key:
            logger.warning("Account has no access key, nothing to associate", extra={
                "account_id": account.id,
                "track": Track(track).value,
            })
            account.clear_association_pending(track)
            return True

        try:
            if current == Tier.NONE:
                self.disassociate(key, plan_name_for(track, previous))
            else:
                self.associate(key, plan_name_for(track, previous), plan_name_for(track, current))
        except TransientExternalError as e:
            logger.warning("Usage plan association pending", extra={
                "account_id": account.id,
                "track": Track(track).value,
                "previous_tier": previous.value,
                "tier": current.value,
                "error": str(e),
            })
            return False
        except ConfigurationError as e:
            # The ledger is already committed; leave the marker for repair
            logger.error("Usage plan association blocked by missing plan", extra={
                "account_id": account.id,
                "track": Track(track).value,
                "previous_tier": previous.value,
                "tier": current.value,
                "error": str(e),
            })
            return False

        account.clear_association_pending(track)
        return True


def build_quota_gateway(db_session, settings: Optional[EngineSettings] = None) -> QuotaAssociationGateway:
    """Gateway over a boto3 API Gateway client for the configured region."""
    settings = settings or get_settings()
    return QuotaAssociationGateway(
        UsagePlanClient(region_name=settings.aws_region),
        QuotaPlansRepository(db_session),
    )
