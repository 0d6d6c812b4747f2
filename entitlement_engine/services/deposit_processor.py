"""
Deposit event processor.

Turns an on-chain token deposit into a time-boxed tier:

    received -> confirmed -> priced -> applied

    amount        = amount_raw / 10^token_decimals
    total_usd     = amount * token_usd_price
    duration_days = total_usd / daily_price(tier)
    plan_end_date = now + duration_days   (truncated to whole seconds)

A deposit replaces any existing plan end date on its track. Nothing is
written until the deposit is confirmed (production only) and priced.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN, localcontext
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_engine.config.billing_catalog import BillingCatalogLoader, get_billing_catalog
from entitlement_engine.config.settings import EngineSettings, get_settings
from entitlement_engine.errors import (
    AccountNotResolvable,
    ConfigurationError,
    ConfirmationError,
    PriceUnavailableError,
    TransientExternalError,
)
from entitlement_engine.models.base import utcnow
from entitlement_engine.repositories.account_ledger import AccountLedger
from entitlement_engine.repositories.event_log import EventLogRepository
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository
from entitlement_engine.schemas.events import DepositEvent
from entitlement_engine.services.account_locks import AccountLockPool, get_account_lock_pool
from entitlement_engine.services.processing_result import EventProcessingResult
from entitlement_engine.services.quota_gateway import QuotaAssociationGateway

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def deposit_duration_seconds(
    amount_raw: int,
    token_usd_price: Decimal,
    daily_price_usd: Decimal,
    token_decimals: int = 18,
) -> int:
    """
    Whole seconds of service bought by a deposit.

    Exact decimal arithmetic; the fractional second is dropped.
    """
    with localcontext() as ctx:
        ctx.prec = 78
        amount = Decimal(amount_raw).scaleb(-token_decimals)
        total_usd = amount * token_usd_price
        duration_days = total_usd / daily_price_usd
        seconds = duration_days * SECONDS_PER_DAY
        return int(seconds.to_integral_value(rounding=ROUND_DOWN))


def plan_end_date_after(now: datetime, duration_seconds: int) -> datetime:
    """now + duration, truncated to whole seconds."""
    return (now + timedelta(seconds=duration_seconds)).replace(microsecond=0)


class DepositEventProcessor:
    """Applies DepositedForAPI / DepositedForRPC events."""

    def __init__(
        self,
        db_session: Session,
        gateway: QuotaAssociationGateway,
        price_oracle,
        chain=None,
        provisioner=None,
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
            price_oracle: Object with ``async token_usd_price() -> Decimal``
            chain: ChainRPCClient, required in production for confirmations
            provisioner: AccountProvisioner used to create accounts for
                first-time wallets; without it unknown wallets are dropped
            catalog: Deposit tier table (defaults to the YAML singleton)
            settings: Engine settings (defaults to the process settings)
            locks: Per-account lock pool (defaults to the shared pool)
            clock: Returns the current aware UTC datetime
        """
        self.db = db_session
        self.gateway = gateway
        self.price_oracle = price_oracle
        self.chain = chain
        self.provisioner = provisioner
        self.catalog = catalog or get_billing_catalog()
        self.settings = settings or get_settings()
        self.locks = locks or get_account_lock_pool()
        self.clock = clock

        self.ledger = AccountLedger(db_session)
        self.events = EventLogRepository(db_session)
        self.plans = QuotaPlansRepository(db_session)

    def _duplicate(self, event: DepositEvent, account_id: Optional[str] = None) -> EventProcessingResult:
        logger.info("Duplicate deposit skipped", extra={
            "transaction_hash": event.transaction_hash,
            "log_index": event.log_index,
        })
        return EventProcessingResult(
            processed=False,
            message="Duplicate deposit - already processed",
            account_id=account_id,
            skipped_reason="duplicate",
        )

    def _failed(self, event: DepositEvent, error: str, message: str) -> EventProcessingResult:
        logger.warning("Deposit not applied", extra={
            "transaction_hash": event.transaction_hash,
            "wallet_address": event.wallet_address,
            "error": error,
            "detail": message,
        })
        return EventProcessingResult(processed=False, message=message, error=error)

    async def process(self, event: DepositEvent) -> EventProcessingResult:
        """
        Apply one deposit.

        Args:
            event: Validated DepositEvent

        Returns:
            EventProcessingResult
        """
        if self.events.is_deposit_processed(event.transaction_hash, event.log_index):
            return self._duplicate(event)

        try:
            deposit_tier = self.catalog.deposit_tier(event.tier_code)
        except ConfigurationError as e:
            return self._failed(event, "configuration_error", str(e))

        if self.settings.is_production:
            if self.chain is None:
                return self._failed(event, "configuration_error", "No chain client for confirmations")
            try:
                await self.chain.wait_for_confirmations(
                    event.transaction_hash,
                    self.settings.deposit_min_confirmations,
                    poll_interval_seconds=self.settings.deposit_poll_interval_seconds,
                )
            except ConfirmationError as e:
                return self._failed(event, "unconfirmed", str(e))
            except TransientExternalError as e:
                return self._failed(event, "transient_error", str(e))

        try:
            price = await self.price_oracle.token_usd_price()
        except PriceUnavailableError as e:
            return self._failed(event, "price_unavailable", str(e))

        try:
            account_id = await self._resolve_account(event)
        except AccountNotResolvable as e:
            return self._failed(event, "account_not_found", str(e))
        except TransientExternalError as e:
            return self._failed(event, "transient_error", str(e))

        async with self.locks.hold(account_id):
            return self._apply(event, account_id, deposit_tier, price)

    async def _resolve_account(self, event: DepositEvent) -> str:
        # Two first deposits from one wallet must not create two accounts
        async with self.locks.hold(f"wallet:{event.wallet_address}"):
            account = self.ledger.find_by_wallet(event.wallet_address)
            if account is None:
                if self.provisioner is None:
                    raise AccountNotResolvable("wallet", event.wallet_address)
                account = self.provisioner.get_or_create_for_wallet(event.wallet_address)
            return account.id

    def _apply(self, event: DepositEvent, account_id: str, deposit_tier, price: Decimal) -> EventProcessingResult:
        if self.events.is_deposit_processed(event.transaction_hash, event.log_index):
            return self._duplicate(event, account_id)

        track = event.track
        try:
            account = self.ledger.get(account_id, for_update=True)
            current = account.tier_for(track)
            new_limit = self.plans.request_limit_for(track, deposit_tier.tier)

            seconds = deposit_duration_seconds(
                event.amount_raw,
                price,
                deposit_tier.daily_price_usd,
                token_decimals=self.settings.token_decimals,
            )
            end = plan_end_date_after(self.clock(), seconds)

            if current != deposit_tier.tier:
                account.mark_association_pending(track, current)
            account.set_tier(track, deposit_tier.tier)
            account.set_request_limit(track, new_limit)
            account.set_plan_end_date(track, end)

            self.events.record_deposit(
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                wallet_address=event.wallet_address,
                track=track.value,
                account_id=account.id,
            )
            self.db.commit()

        except IntegrityError:
            self.db.rollback()
            return self._duplicate(event, account_id)
        except ConfigurationError as e:
            self.db.rollback()
            return self._failed(event, "configuration_error", str(e))
        except Exception as e:
            logger.error("Error processing deposit", extra={
                "transaction_hash": event.transaction_hash,
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

        logger.info("Deposit applied", extra={
            "transaction_hash": event.transaction_hash,
            "account_id": account.id,
            "track": track.value,
            "from_tier": current.value,
            "to_tier": deposit_tier.tier.value,
            "token_usd": str(price),
            "duration_seconds": seconds,
            "plan_end_date": end.isoformat(),
        })

        aligned = self.gateway.align(account, track)
        self.db.commit()

        return EventProcessingResult(
            processed=True,
            message=f"{deposit_tier.tier.value} until {end.isoformat()}",
            account_id=account.id,
            association_pending=not aligned,
        )
