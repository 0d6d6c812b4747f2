"""
Partner provisioning processor.

Applies requests from a provisioning partner (marketplace add-on) to the
account ledger:
- provision: create an account on the partner's plan
- update: move the account to the new plan's tier
- deprovision: tear the partner plan's track down to None

Partner requests carry no event id; they are idempotent on state. A second
provision of an active partner id is skipped, a change to the current plan
and a deprovision of a track already at None change nothing.

Only tiers the partner granted are torn down: if another source (deposit,
subscription) moved the track since, the partner's plan no longer owns it.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from entitlement_engine.config.billing_catalog import BillingCatalogLoader, PartnerPlan, get_billing_catalog
from entitlement_engine.errors import ConfigurationError, TransientExternalError
from entitlement_engine.models.account import Account, Tier, Track
from entitlement_engine.repositories.account_ledger import AccountLedger
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository
from entitlement_engine.schemas.events import PartnerDeprovision, PartnerPlanChange, PartnerProvision
from entitlement_engine.services.account_locks import AccountLockPool, get_account_lock_pool
from entitlement_engine.services.account_provisioning import AccountProvisioner, ProvisioningError
from entitlement_engine.services.processing_result import EventProcessingResult
from entitlement_engine.services.quota_gateway import QuotaAssociationGateway

logger = logging.getLogger(__name__)


class PartnerProvisioningProcessor:
    """Handler for partner provision, update and deprovision requests."""

    def __init__(
        self,
        db_session: Session,
        gateway: QuotaAssociationGateway,
        provisioner: Optional[AccountProvisioner] = None,
        catalog: Optional[BillingCatalogLoader] = None,
        locks: Optional[AccountLockPool] = None,
    ):
        """
        Initialize processor.

        Args:
            db_session: Database session
            gateway: Quota association gateway
            provisioner: Creates accounts for new partner ids (defaults to
                one over the same session and gateway)
            catalog: Partner plan table (defaults to the YAML singleton)
            locks: Per-account lock pool (defaults to the shared pool)
        """
        self.db = db_session
        self.gateway = gateway
        self.provisioner = provisioner or AccountProvisioner(db_session, gateway)
        self.catalog = catalog or get_billing_catalog()
        self.locks = locks or get_account_lock_pool()

        self.ledger = AccountLedger(db_session)
        self.plans = QuotaPlansRepository(db_session)

    async def process(self, request) -> EventProcessingResult:
        """
        Apply one partner request.

        Args:
            request: PartnerProvision, PartnerPlanChange or PartnerDeprovision

        Returns:
            EventProcessingResult
        """
        if isinstance(request, PartnerProvision):
            return await self.provision(request)
        if isinstance(request, PartnerPlanChange):
            return await self.change_plan(request)
        if isinstance(request, PartnerDeprovision):
            return await self.deprovision(request)
        raise ValueError(f"Unsupported partner request: {type(request).__name__}")

    def _failed(self, request, error: str, message: str, account_id: Optional[str] = None) -> EventProcessingResult:
        logger.warning("Partner request not applied", extra={
            "partner_ref": request.partner_ref,
            "kind": request.kind,
            "error": error,
            "detail": message,
        })
        return EventProcessingResult(processed=False, message=message, account_id=account_id, error=error)

    async def provision(self, request: PartnerProvision) -> EventProcessingResult:
        """Create an account on the partner's plan, or re-activate one."""
        try:
            plan = self.catalog.partner_plan(request.plan)
        except ConfigurationError as e:
            return self._failed(request, "configuration_error", str(e))

        # Two provisions of one partner id must not create two accounts
        async with self.locks.hold(f"partner:{request.partner_ref}"):
            account = self.ledger.find_by_partner(request.partner_ref)

            if account is not None and account.partner_plan:
                logger.info("Partner account already provisioned", extra={
                    "partner_ref": request.partner_ref,
                    "account_id": account.id,
                })
                return EventProcessingResult(
                    processed=False,
                    message="Partner account already provisioned",
                    account_id=account.id,
                    skipped_reason="already_provisioned",
                )

            if account is None:
                try:
                    account = self.provisioner.create_account(
                        email=request.email,
                        partner_ref=request.partner_ref,
                        initial_tiers={plan.track: plan.tier},
                        partner_plan=plan.name,
                    )
                except ConfigurationError as e:
                    return self._failed(request, "configuration_error", str(e))
                except TransientExternalError as e:
                    return self._failed(request, "transient_error", str(e))
                except ProvisioningError as e:
                    return self._failed(request, "provisioning_error", str(e))

                logger.info("Partner account provisioned", extra={
                    "partner_ref": request.partner_ref,
                    "account_id": account.id,
                    "plan": plan.name,
                })
                return EventProcessingResult(
                    processed=True,
                    message=f"Provisioned on {plan.name}",
                    account_id=account.id,
                    association_pending=account.association_pending_from(plan.track) is not None,
                )

        # Deprovisioned earlier; the partner id comes back on a new plan
        async with self.locks.hold(account.id):
            return self._move_to_plan(request, account.id, plan)

    async def change_plan(self, request: PartnerPlanChange) -> EventProcessingResult:
        """Move a partner account to the tier of its new plan."""
        account = self.ledger.find_by_partner(request.partner_ref)
        if account is None:
            return self._failed(request, "account_not_found", "Partner account not found")

        try:
            plan = self.catalog.partner_plan(request.plan)
        except ConfigurationError as e:
            return self._failed(request, "configuration_error", str(e), account.id)

        async with self.locks.hold(account.id):
            return self._move_to_plan(request, account.id, plan)

    async def deprovision(self, request: PartnerDeprovision) -> EventProcessingResult:
        """Tear the partner plan's track down to None."""
        account = self.ledger.find_by_partner(request.partner_ref)
        if account is None:
            return self._failed(request, "account_not_found", "Partner account not found")

        async with self.locks.hold(account.id):
            return self._deprovision_locked(request, account.id)

    def _owned_plan(self, account: Account) -> Optional[PartnerPlan]:
        """The partner plan still in force on its track, if any."""
        if not account.partner_plan:
            return None
        plan = self.catalog.partner_plan(account.partner_plan)
        if account.tier_for(plan.track) != plan.tier:
            return None
        return plan

    def _move_to_plan(self, request, account_id: str, plan: PartnerPlan) -> EventProcessingResult:
        account = self.ledger.get(account_id, for_update=True)

        try:
            previous = self._owned_plan(account)
            new_limit = self.plans.request_limit_for(plan.track, plan.tier)
        except ConfigurationError as e:
            self.db.rollback()
            return self._failed(request, "configuration_error", str(e), account_id)

        changed: List[Track] = []

        # A plan on the other track releases the one the partner held
        if previous is not None and previous.track != plan.track:
            self._set_tier(account, previous.track, Tier.NONE, 0)
            changed.append(previous.track)

        if account.tier_for(plan.track) != plan.tier:
            self._set_tier(account, plan.track, plan.tier, new_limit)
            changed.append(plan.track)
        # Partner plans are open-ended
        account.set_plan_end_date(plan.track, None)
        account.partner_plan = plan.name
        self.db.commit()

        logger.info("Partner plan applied", extra={
            "partner_ref": request.partner_ref,
            "account_id": account.id,
            "plan": plan.name,
            "tracks_changed": [t.value for t in changed],
        })

        return self._align(account, changed, f"Partner plan {plan.name}")

    def _deprovision_locked(self, request: PartnerDeprovision, account_id: str) -> EventProcessingResult:
        account = self.ledger.get(account_id, for_update=True)

        plan_name = account.partner_plan or request.plan
        if not plan_name:
            self.db.rollback()
            return EventProcessingResult(
                processed=False,
                message="No partner plan to deprovision",
                account_id=account_id,
                skipped_reason="not_provisioned",
            )

        try:
            plan = self.catalog.partner_plan(plan_name)
        except ConfigurationError as e:
            self.db.rollback()
            return self._failed(request, "configuration_error", str(e), account_id)

        current = account.tier_for(plan.track)
        account.partner_plan = None

        if current == Tier.NONE:
            self.db.commit()
            return EventProcessingResult(
                processed=True,
                message="Track already deprovisioned",
                account_id=account.id,
            )

        if current != plan.tier:
            self.db.commit()
            logger.info("Partner deprovision left track to its current source", extra={
                "partner_ref": request.partner_ref,
                "account_id": account.id,
                "track": plan.track.value,
                "tier": current.value,
            })
            return EventProcessingResult(
                processed=False,
                message=f"Track {plan.track.value} is no longer on the partner plan",
                account_id=account.id,
                skipped_reason="not_partner_tier",
            )

        self._set_tier(account, plan.track, Tier.NONE, 0)
        account.set_plan_end_date(plan.track, None)
        self.db.commit()

        logger.info("Partner plan deprovisioned", extra={
            "partner_ref": request.partner_ref,
            "account_id": account.id,
            "track": plan.track.value,
            "from_tier": current.value,
        })

        return self._align(account, [plan.track], f"Tier changed {current.value} -> None")

    @staticmethod
    def _set_tier(account: Account, track: Track, tier: Tier, limit: int) -> None:
        account.mark_association_pending(track, account.tier_for(track))
        account.set_tier(track, tier)
        account.set_request_limit(track, limit)

    def _align(self, account: Account, tracks: List[Track], message: str) -> EventProcessingResult:
        aligned = all([self.gateway.align(account, track) for track in tracks])
        self.db.commit()
        return EventProcessingResult(
            processed=True,
            message=message,
            account_id=account.id,
            association_pending=not aligned,
        )
