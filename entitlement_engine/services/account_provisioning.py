"""
Account provisioning.

Creates an account on both tracks, at the Free tier unless the caller (a
provisioning partner) names another:
1. optional billing customer
2. access key at the enforcement backend
3. account row committed with both tracks marked pending from None
4. key associated with the initial plan on each track

A failed association in step 4 leaves the marker set; the association
repair sweep finishes the job.
"""

import logging
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_engine.config.settings import EngineSettings, get_settings
from entitlement_engine.models.account import Account, Tier, Track, generate_referral_code
from entitlement_engine.repositories.account_ledger import AccountLedger, normalize_wallet
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository
from entitlement_engine.services.quota_gateway import QuotaAssociationGateway

logger = logging.getLogger(__name__)

_REFERRAL_CODE_ATTEMPTS = 5


class ProvisioningError(Exception):
    """Account could not be created."""
    pass


class AccountProvisioner:
    """Creates accounts and their access keys."""

    def __init__(
        self,
        db_session: Session,
        gateway: QuotaAssociationGateway,
        billing_platform=None,
        settings: Optional[EngineSettings] = None,
    ):
        """
        Args:
            db_session: Database session
            gateway: Quota association gateway
            billing_platform: Optional StripeBillingPlatform for customer creation
            settings: Engine settings (defaults to the process settings)
        """
        self.db = db_session
        self.gateway = gateway
        self.billing_platform = billing_platform
        self.settings = settings or get_settings()
        self.ledger = AccountLedger(db_session)
        self.plans = QuotaPlansRepository(db_session)

    def _new_referral_code(self) -> str:
        for _ in range(_REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code()
            if not self.ledger.referral_code_exists(code):
                return code
        raise ProvisioningError("Could not generate a unique referral code")

    def _valid_referrer(self, referrer_code: Optional[str]) -> Optional[str]:
        if not referrer_code:
            return None
        if self.ledger.find_by_referral_code(referrer_code) is None:
            logger.warning("Unknown referrer code ignored", extra={"referrer_code": referrer_code})
            return None
        return referrer_code

    def create_account(
        self,
        email: Optional[str] = None,
        wallet_address: Optional[str] = None,
        partner_ref: Optional[str] = None,
        github_id: Optional[str] = None,
        google_id: Optional[str] = None,
        referrer_code: Optional[str] = None,
        create_billing_customer: bool = False,
        initial_tiers: Optional[Dict[Track, Tier]] = None,
        partner_plan: Optional[str] = None,
    ) -> Account:
        """
        Create an account, Free on both tracks unless initial_tiers overrides.

        Args:
            email: Contact address
            wallet_address: EVM wallet (stored lower-cased)
            partner_ref: Externally provisioned partner id
            github_id: GitHub OAuth id
            google_id: Google OAuth id
            referrer_code: Referral code the user signed up with
            create_billing_customer: Also create a billing customer
            initial_tiers: Tier per track replacing Free
            partner_plan: Partner plan the account was provisioned on

        Returns:
            The committed Account

        Raises:
            ConfigurationError: If an initial quota plan is missing
            TransientExternalError: If the access key cannot be created
            ProvisioningError: If an identity is already taken
        """
        account = Account(
            email=email,
            wallet_address=normalize_wallet(wallet_address) if wallet_address else None,
            partner_ref=partner_ref,
            github_id=github_id,
            google_id=google_id,
            referral_code=self._new_referral_code(),
            referrer_code=self._valid_referrer(referrer_code),
            partner_plan=partner_plan,
        )

        initial_tiers = initial_tiers or {}
        for track in Track:
            tier = Tier(initial_tiers.get(track, Tier.FREE))
            account.set_tier(track, tier)
            account.set_request_limit(track, self.plans.request_limit_for(track, tier))
            account.set_request_count(track, 0)
            account.mark_association_pending(track, Tier.NONE)

        account.external_api_key_ref = self.gateway.create_access_key(self.settings.access_key_name)

        try:
            account = self.ledger.save(account)
            if create_billing_customer and self.billing_platform is not None:
                account.billing_customer_ref = self.billing_platform.create_customer(email, account.id)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ProvisioningError(f"Account identity already registered: {e.orig}") from e
        except Exception:
            self.db.rollback()
            raise

        logger.info("Account created", extra={
            "account_id": account.id,
            "has_wallet": bool(account.wallet_address),
            "referred": bool(account.referrer_code),
            "partner_plan": account.partner_plan,
        })

        self.associate_initial_plans(account)
        return account

    def associate_initial_plans(self, account: Account) -> bool:
        """Associate the initial plans; returns False if any track is still pending."""
        aligned = all([self.gateway.align(account, track) for track in Track])
        self.db.commit()
        return aligned

    def get_or_create_for_wallet(self, wallet_address: str) -> Account:
        """Resolve a depositing wallet, creating an account on first sight."""
        account = self.ledger.find_by_wallet(wallet_address)
        if account is not None:
            return account
        return self.create_account(wallet_address=wallet_address)
