"""
Account Ledger: persistence for per-account entitlement state.

The ledger never commits on its own. Processors and sweeps own the
transaction so that a tier change, its idempotency record and any referral
credit land in one commit, and so that the commit happens before the
external usage-plan association call.
"""

import logging
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select, update, or_
from sqlalchemy.orm import Session

from entitlement_engine.models.account import Account, Tier, Track

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class UnknownReferenceKindError(LedgerError):
    """find_by_external_ref was called with an unsupported kind."""
    pass


# External reference kind -> Account column
_REF_COLUMNS = {
    "billing_customer": Account.billing_customer_ref,
    "wallet": Account.wallet_address,
    "partner": Account.partner_ref,
    "github": Account.github_id,
    "google": Account.google_id,
    "email": Account.email,
    "referral_code": Account.referral_code,
}


def normalize_wallet(address: str) -> str:
    """EVM addresses are compared case-insensitively."""
    return address.strip().lower()


class AccountLedger:
    """
    Repository for Account rows.

    Accounts are global (not tenant-scoped). All mutation of entitlement
    columns goes through the reconciliation engine.
    """

    def __init__(self, db_session: Session):
        """
        Initialize account ledger.

        Args:
            db_session: Database session
        """
        self.db = db_session

    def get(self, account_id: str, for_update: bool = False) -> Optional[Account]:
        """
        Get an account by primary key.

        Args:
            account_id: Account identifier
            for_update: Take a row-level lock (SELECT ... FOR UPDATE) and
                bypass the identity map so the caller sees committed state

        Returns:
            Account if found, None otherwise
        """
        stmt = select(Account).where(Account.id == account_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def save(self, account: Account) -> Account:
        """
        Insert or update an account (flushes, does not commit).

        Args:
            account: Account instance

        Returns:
            The persisted instance
        """
        if account.wallet_address:
            account.wallet_address = normalize_wallet(account.wallet_address)
        self.db.add(account)
        self.db.flush()
        return account

    def find_by_external_ref(self, kind: str, value: Optional[str]) -> Optional[Account]:
        """
        Resolve an account by an external reference.

        Args:
            kind: One of billing_customer, wallet, partner, github, google,
                email, referral_code
            value: Reference value

        Returns:
            Account if found, None otherwise

        Raises:
            UnknownReferenceKindError: If kind is not supported
        """
        column = _REF_COLUMNS.get(kind)
        if column is None:
            raise UnknownReferenceKindError(f"Unsupported reference kind: {kind}")
        if not value:
            return None
        if kind == "wallet":
            value = normalize_wallet(value)
        return self.db.execute(
            select(Account).where(column == value)
        ).scalar_one_or_none()

    def find_by_billing_customer(self, customer_ref: str) -> Optional[Account]:
        return self.find_by_external_ref("billing_customer", customer_ref)

    def find_by_wallet(self, wallet_address: str) -> Optional[Account]:
        return self.find_by_external_ref("wallet", wallet_address)

    def find_by_partner(self, partner_ref: str) -> Optional[Account]:
        return self.find_by_external_ref("partner", partner_ref)

    def find_by_referral_code(self, code: str) -> Optional[Account]:
        return self.find_by_external_ref("referral_code", code)

    def referral_code_exists(self, code: str) -> bool:
        return self.find_by_referral_code(code) is not None

    def credit_referral_points(self, account_id: str, points: Decimal) -> None:
        """
        Atomically add points to an account's referral balance.

        Uses a single UPDATE so concurrent credits to the same referrer
        never lose an increment. Negative amounts are rejected; the balance
        only grows.
        """
        if points < 0:
            raise LedgerError("Referral points can only be credited, not debited")
        self.db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(referral_points=Account.referral_points + points)
        )

    # Sweep queries

    def iter_account_ids(self) -> List[str]:
        """All account ids, oldest first."""
        return list(self.db.execute(
            select(Account.id).order_by(Account.created_at, Account.id)
        ).scalars())

    def ids_on_tier(self, track: Track, tier: Tier) -> List[str]:
        column = Account.api_tier if Track(track) == Track.API else Account.rpc_tier
        return list(self.db.execute(
            select(Account.id).where(column == Tier(tier).value).order_by(Account.created_at)
        ).scalars())

    def ids_with_plan_end_date(self) -> List[str]:
        return list(self.db.execute(
            select(Account.id).where(
                or_(
                    Account.api_plan_end_date.isnot(None),
                    Account.rpc_plan_end_date.isnot(None),
                )
            ).order_by(Account.created_at)
        ).scalars())

    def ids_with_pending_association(self) -> List[str]:
        return list(self.db.execute(
            select(Account.id).where(
                or_(
                    Account.api_association_pending_from.isnot(None),
                    Account.rpc_association_pending_from.isnot(None),
                )
            ).order_by(Account.created_at)
        ).scalars())
