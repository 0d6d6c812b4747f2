"""
Subscription event processor with idempotency support.

Applies billing-platform subscription lifecycle events to the account
ledger:
- Event deduplication on the billing event id (durable record)
- Duplicate subscription-creation guard on the stored subscription ref
- Plan swaps: the replaced subscription is cancelled on the platform and
  its later deletion event is recognized as our own
- Referral bonus credited in the same transaction as the tier change
- Ledger commit first, usage-plan association second
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_engine.config.billing_catalog import BillingCatalogLoader, get_billing_catalog
from entitlement_engine.config.settings import EngineSettings, get_settings
from entitlement_engine.errors import (
    ConfigurationError,
    DuplicateEvent,
    TransientExternalError,
)
from entitlement_engine.models.account import Account, Tier
from entitlement_engine.models.base import utcnow
from entitlement_engine.repositories.account_ledger import AccountLedger
from entitlement_engine.repositories.event_log import EventLogRepository
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository
from entitlement_engine.schemas.events import (
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    TrialWillEnd,
)
from entitlement_engine.services.account_locks import AccountLockPool, get_account_lock_pool
from entitlement_engine.services.notifications import TrialNotifier
from entitlement_engine.services.processing_result import EventProcessingResult
from entitlement_engine.services.quota_gateway import QuotaAssociationGateway

logger = logging.getLogger(__name__)

# Tiers that are backed by a paid subscription
_PAID_TIERS = (Tier.STARTER, Tier.GROWTH, Tier.BUSINESS, Tier.ENTERPRISE)


class SubscriptionEventProcessor:
    """
    Handler for subscription lifecycle events.

    One instance per request/session; the lock pool is process-wide.
    """

    def __init__(
        self,
        db_session: Session,
        gateway: QuotaAssociationGateway,
        billing_platform=None,
        notifier: Optional[TrialNotifier] = None,
        catalog: Optional[BillingCatalogLoader] = None,
        settings: Optional[EngineSettings] = None,
        locks: Optional[AccountLockPool] = None,
        clock: Callable = utcnow,
    ):
        """
        Initialize processor.

        Args:
            db_session: Database session
            gateway: Quota association gateway
            billing_platform: StripeBillingPlatform used to cancel replaced
                subscriptions (plan swaps are not cancelled when None)
            notifier: Trial-ending notice sender
            catalog: Product catalog (defaults to the YAML singleton)
            settings: Engine settings (defaults to the process settings)
            locks: Per-account lock pool (defaults to the shared pool)
            clock: Returns the current aware UTC datetime
        """
        self.db = db_session
        self.gateway = gateway
        self.billing_platform = billing_platform
        self.notifier = notifier
        self.catalog = catalog or get_billing_catalog()
        self.settings = settings or get_settings()
        self.locks = locks or get_account_lock_pool()
        self.clock = clock

        self.ledger = AccountLedger(db_session)
        self.events = EventLogRepository(db_session)
        self.plans = QuotaPlansRepository(db_session)

    async def process(self, event) -> EventProcessingResult:
        """
        Apply one subscription event.

        Args:
            event: SubscriptionCreated, SubscriptionUpdated,
                SubscriptionDeleted or TrialWillEnd

        Returns:
            EventProcessingResult
        """
        if self.events.is_billing_event_processed(event.id):
            logger.info("Duplicate subscription event skipped", extra={
                "event_id": event.id,
                "kind": event.kind,
            })
            return EventProcessingResult(
                processed=False,
                message="Duplicate event - already processed",
                skipped_reason="duplicate",
            )

        account = self.ledger.find_by_billing_customer(event.customer_ref)
        if account is None:
            logger.warning("Account not found for subscription event", extra={
                "event_id": event.id,
                "customer_ref": event.customer_ref,
            })
            # Record even if not resolvable (to prevent reprocessing)
            self._record(event, "account_not_found")
            self._commit_record()
            return EventProcessingResult(
                processed=False,
                message="Account not found",
                error="account_not_found",
            )

        async with self.locks.hold(account.id):
            return await self._process_locked(event, account.id)

    async def _process_locked(self, event, account_id: str) -> EventProcessingResult:
        # Another task may have applied this event while we waited
        if self.events.is_billing_event_processed(event.id):
            return EventProcessingResult(
                processed=False,
                message="Duplicate event - already processed",
                account_id=account_id,
                skipped_reason="duplicate",
            )

        account = self.ledger.get(account_id, for_update=True)

        try:
            if isinstance(event, (SubscriptionCreated, SubscriptionUpdated)):
                return await self._apply_subscription(event, account)
            if isinstance(event, SubscriptionDeleted):
                return await self._apply_deletion(event, account)
            if isinstance(event, TrialWillEnd):
                return await self._notify_trial_ending(event, account)
            raise ValueError(f"Unsupported subscription event: {type(event).__name__}")

        except DuplicateEvent as e:
            self.db.rollback()
            logger.info("Duplicate subscription creation skipped", extra={
                "event_id": event.id,
                "account_id": account_id,
                "subscription_ref": event.subscription_ref,
            })
            self._record(event, "duplicate")
            self._commit_record()
            return EventProcessingResult(
                processed=False,
                message=str(e),
                account_id=account_id,
                skipped_reason=e.reason,
            )

        except IntegrityError:
            # Event id committed concurrently by another process
            self.db.rollback()
            logger.info("Subscription event recorded concurrently", extra={"event_id": event.id})
            return EventProcessingResult(
                processed=False,
                message="Duplicate event - already processed",
                account_id=account_id,
                skipped_reason="duplicate",
            )

        except ConfigurationError as e:
            self.db.rollback()
            logger.error("Configuration error processing subscription event", extra={
                "event_id": event.id,
                "account_id": account_id,
                "error": str(e),
            })
            return EventProcessingResult(
                processed=False,
                message=f"Configuration error: {e}",
                account_id=account_id,
                error="configuration_error",
            )

        except TransientExternalError as e:
            self.db.rollback()
            logger.warning("External service unavailable, event not applied", extra={
                "event_id": event.id,
                "account_id": account_id,
                "service": e.service,
                "error": str(e),
            })
            return EventProcessingResult(
                processed=False,
                message=f"External service error: {e}",
                account_id=account_id,
                error="transient_error",
            )

        except Exception as e:
            logger.error("Error processing subscription event", extra={
                "event_id": event.id,
                "account_id": account_id,
                "error": str(e),
            }, exc_info=True)
            self.db.rollback()
            return EventProcessingResult(
                processed=False,
                message=f"Processing error: {str(e)}",
                account_id=account_id,
                error="processing_error",
            )

    async def _apply_subscription(self, event, account: Account) -> EventProcessingResult:
        """Handle created/updated: move the product's track to its tier."""
        entry = self.catalog.product(event.product_ref)
        track = entry.track
        current = account.tier_for(track)
        stored_ref = account.subscription_ref_for(track)
        is_creation = event.kind == "created"

        if is_creation and event.subscription_ref and event.subscription_ref == stored_ref:
            raise DuplicateEvent(event.subscription_ref, reason="duplicate_subscription")

        if not is_creation and stored_ref and event.subscription_ref and event.subscription_ref != stored_ref:
            self._record(event, "stale_subscription")
            self.db.commit()
            logger.info("Update for a replaced subscription ignored", extra={
                "account_id": account.id,
                "subscription_ref": event.subscription_ref,
                "current_ref": stored_ref,
            })
            return EventProcessingResult(
                processed=False,
                message="Subscription is no longer current",
                account_id=account.id,
                skipped_reason="stale_subscription",
            )

        if entry.tier == current:
            if event.subscription_ref:
                account.set_subscription_ref(track, event.subscription_ref)
                account.set_plan_end_date(track, None)
            self._record(event, "unchanged")
            self.db.commit()
            return EventProcessingResult(
                processed=True,
                message=f"Tier unchanged ({current.value})",
                account_id=account.id,
            )

        # Resolve the limit before mutating anything
        new_limit = self.plans.request_limit_for(track, entry.tier)

        replaced_ref = None
        if is_creation and stored_ref and current in _PAID_TIERS:
            replaced_ref = stored_ref
            self.events.record_self_cancellation(
                subscription_ref=stored_ref,
                account_id=account.id,
                track=track.value,
                replaced_by_ref=event.subscription_ref,
                reason="plan_swap",
            )

        account.mark_association_pending(track, current)
        account.set_tier(track, entry.tier)
        account.set_request_limit(track, new_limit)
        account.set_subscription_ref(track, event.subscription_ref)
        # A subscription supersedes any deposit-bought or grace end date
        account.set_plan_end_date(track, None)

        if is_creation:
            self._credit_referral(account, event.unit_amount)

        self._record(event, "applied")
        self.db.commit()

        logger.info("Subscription tier applied", extra={
            "event_id": event.id,
            "account_id": account.id,
            "track": track.value,
            "from_tier": current.value,
            "to_tier": entry.tier.value,
        })

        if replaced_ref:
            self._cancel_replaced(replaced_ref, account.id)

        aligned = self.gateway.align(account, track)
        self.db.commit()

        return EventProcessingResult(
            processed=True,
            message=f"Tier changed {current.value} -> {entry.tier.value}",
            account_id=account.id,
            association_pending=not aligned,
        )

    async def _apply_deletion(self, event: SubscriptionDeleted, account: Account) -> EventProcessingResult:
        """Handle deleted: tear the track down to None."""
        if self.events.consume_self_cancellation(event.subscription_ref):
            self._record(event, "self_cancellation")
            self.db.commit()
            logger.info("Deletion of self-cancelled subscription consumed", extra={
                "account_id": account.id,
                "subscription_ref": event.subscription_ref,
            })
            return EventProcessingResult(
                processed=False,
                message="Subscription was replaced by a plan swap",
                account_id=account.id,
                skipped_reason="self_cancellation",
            )

        track = self.catalog.product(event.product_ref).track
        stored_ref = account.subscription_ref_for(track)

        if stored_ref and event.subscription_ref and stored_ref != event.subscription_ref:
            self._record(event, "stale_subscription")
            self.db.commit()
            return EventProcessingResult(
                processed=False,
                message="Deleted subscription is not the current one",
                account_id=account.id,
                skipped_reason="stale_subscription",
            )

        current = account.tier_for(track)
        if current == Tier.NONE:
            self._record(event, "unchanged")
            self.db.commit()
            return EventProcessingResult(
                processed=True,
                message="Track already deprovisioned",
                account_id=account.id,
            )

        grace_days = self.settings.deletion_grace_period_days
        if grace_days > 0:
            end = (self.clock() + timedelta(days=grace_days)).replace(microsecond=0)
            account.set_plan_end_date(track, end)
            account.set_subscription_ref(track, None)
            self._record(event, "grace_period")
            self.db.commit()
            logger.info("Subscription deleted, tier kept for grace period", extra={
                "account_id": account.id,
                "track": track.value,
                "plan_end_date": end.isoformat(),
            })
            return EventProcessingResult(
                processed=True,
                message=f"Tier kept until {end.isoformat()}",
                account_id=account.id,
            )

        account.mark_association_pending(track, current)
        account.set_tier(track, Tier.NONE)
        account.set_request_limit(track, 0)
        account.set_subscription_ref(track, None)
        account.set_plan_end_date(track, None)
        self._record(event, "applied")
        self.db.commit()

        logger.info("Subscription deleted, track deprovisioned", extra={
            "event_id": event.id,
            "account_id": account.id,
            "track": track.value,
            "from_tier": current.value,
        })

        aligned = self.gateway.align(account, track)
        self.db.commit()

        return EventProcessingResult(
            processed=True,
            message=f"Tier changed {current.value} -> None",
            account_id=account.id,
            association_pending=not aligned,
        )

    async def _notify_trial_ending(self, event: TrialWillEnd, account: Account) -> EventProcessingResult:
        """Handle trial_will_end: notice only, no entitlement change."""
        if self.notifier is None or not account.contact:
            logger.info("Trial ending notice skipped", extra={
                "account_id": account.id,
                "has_contact": bool(account.contact),
            })
            self._record(event, "skipped")
            self.db.commit()
            return EventProcessingResult(
                processed=False,
                message="No notifier or contact",
                account_id=account.id,
                skipped_reason="no_contact",
            )

        await self.notifier.send_trial_ending_notice(account.contact)
        self._record(event, "notified")
        self.db.commit()
        return EventProcessingResult(
            processed=True,
            message="Trial ending notice sent",
            account_id=account.id,
        )

    def _credit_referral(self, account: Account, unit_amount: Optional[int]) -> None:
        """Credit the referrer a percentage of the subscription price."""
        if not account.referrer_code or not unit_amount:
            return

        referrer = self.ledger.find_by_referral_code(account.referrer_code)
        if referrer is None or referrer.id == account.id:
            logger.warning("Referrer not found for referral bonus", extra={
                "account_id": account.id,
                "referrer_code": account.referrer_code,
            })
            return

        points = Decimal(unit_amount) * self.settings.referral_bonus_percent / Decimal(100)
        self.ledger.credit_referral_points(referrer.id, points)
        logger.info("Referral bonus credited", extra={
            "referrer_id": referrer.id,
            "account_id": account.id,
            "points": str(points),
        })

    def _cancel_replaced(self, subscription_ref: str, account_id: str) -> None:
        if self.billing_platform is None:
            logger.warning("No billing platform configured, replaced subscription left active", extra={
                "account_id": account_id,
                "subscription_ref": subscription_ref,
            })
            return
        try:
            self.billing_platform.cancel_subscription(subscription_ref)
        except TransientExternalError as e:
            logger.error("Failed to cancel replaced subscription", extra={
                "account_id": account_id,
                "subscription_ref": subscription_ref,
                "error": str(e),
            })

    def _record(self, event, outcome: str) -> None:
        self.events.record_billing_event(
            event_id=event.id,
            kind=event.kind,
            outcome=outcome,
            customer_ref=event.customer_ref,
            subscription_ref=event.subscription_ref,
        )

    def _commit_record(self) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("Billing event already recorded")
