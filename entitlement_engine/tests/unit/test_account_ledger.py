"""
Unit tests for AccountLedger and the Account track accessors.
"""

from decimal import Decimal

import pytest

from entitlement_engine.models.account import Account, Tier, Track, plan_name_for
from entitlement_engine.repositories.account_ledger import (
    AccountLedger,
    LedgerError,
    UnknownReferenceKindError,
)


@pytest.fixture
def ledger(db_session):
    return AccountLedger(db_session)


class TestPlanNames:
    """Tests for (track, tier) -> plan name."""

    def test_api_track_uses_tier_name(self):
        assert plan_name_for(Track.API, Tier.STARTER) == "Starter"

    def test_rpc_track_appends_suffix(self):
        assert plan_name_for(Track.RPC, Tier.STARTER) == "Starter Archival MultiNode"

    def test_none_tier_has_no_plan(self):
        assert plan_name_for(Track.RPC, Tier.NONE) is None


class TestTrackAccessors:
    """Tests for per-track column access on Account."""

    def test_tracks_are_independent(self, make_account):
        account = make_account()
        account.set_tier(Track.RPC, Tier.GROWTH)

        assert account.tier_for(Track.RPC) == Tier.GROWTH
        assert account.tier_for(Track.API) == Tier.FREE
        assert account.rpc_tier == "Growth"

    def test_earliest_pending_marker_wins(self, make_account):
        account = make_account()
        account.mark_association_pending(Track.API, Tier.FREE)
        account.mark_association_pending(Track.API, Tier.STARTER)

        assert account.association_pending_from(Track.API) == Tier.FREE

        account.clear_association_pending(Track.API)
        assert account.association_pending_from(Track.API) is None


class TestFindByExternalRef:
    """Tests for account resolution."""

    def test_billing_customer(self, ledger, make_account):
        account = make_account(billing_customer_ref="cus_abc")
        assert ledger.find_by_external_ref("billing_customer", "cus_abc").id == account.id

    def test_wallet_is_case_insensitive(self, ledger, make_account):
        account = make_account(wallet_address="0x" + "ab" * 20)
        found = ledger.find_by_wallet("0x" + "AB" * 20)
        assert found.id == account.id

    @pytest.mark.parametrize("kind,field", [
        ("partner", "partner_ref"),
        ("github", "github_id"),
        ("google", "google_id"),
        ("email", "email"),
    ])
    def test_identity_kinds(self, ledger, make_account, kind, field):
        account = make_account(**{field: f"{kind}-value"})
        assert ledger.find_by_external_ref(kind, f"{kind}-value").id == account.id

    def test_referral_code(self, ledger, make_account):
        account = make_account(referral_code="feedbeef")
        assert ledger.find_by_referral_code("feedbeef").id == account.id
        assert ledger.referral_code_exists("feedbeef")

    def test_missing_value_returns_none(self, ledger):
        assert ledger.find_by_external_ref("wallet", None) is None
        assert ledger.find_by_external_ref("billing_customer", "cus_missing") is None

    def test_unknown_kind_raises(self, ledger):
        with pytest.raises(UnknownReferenceKindError):
            ledger.find_by_external_ref("twitter", "x")


class TestSaveAndGet:
    """Tests for persistence."""

    def test_save_generates_referral_code_and_normalizes_wallet(self, ledger, db_session):
        account = ledger.save(Account(wallet_address="0x" + "CD" * 20))
        db_session.commit()

        loaded = ledger.get(account.id, for_update=True)
        assert loaded.wallet_address == "0x" + "cd" * 20
        assert len(loaded.referral_code) == 8
        assert loaded.tier_for(Track.API) == Tier.FREE

    def test_get_missing_returns_none(self, ledger):
        assert ledger.get("no-such-id") is None


class TestReferralCredit:
    """Tests for atomic referral increments."""

    def test_credits_accumulate(self, ledger, make_account, db_session):
        referrer = make_account()

        ledger.credit_referral_points(referrer.id, Decimal("75.0"))
        ledger.credit_referral_points(referrer.id, Decimal("37.5"))
        db_session.commit()

        assert ledger.get(referrer.id, for_update=True).referral_points == Decimal("112.5")

    def test_negative_credit_rejected(self, ledger, make_account):
        referrer = make_account()
        with pytest.raises(LedgerError):
            ledger.credit_referral_points(referrer.id, Decimal("-1"))


class TestSweepQueries:
    """Tests for the id lists used by scheduled sweeps."""

    def test_ids_on_tier(self, ledger, make_account):
        free = make_account()
        make_account(api_tier="Growth")

        assert ledger.ids_on_tier(Track.API, Tier.FREE) == [free.id]

    def test_ids_with_pending_association(self, ledger, make_account):
        make_account()
        pending = make_account(rpc_association_pending_from="Free")

        assert ledger.ids_with_pending_association() == [pending.id]

    def test_iter_account_ids_covers_all(self, ledger, make_account):
        ids = {make_account().id for _ in range(3)}
        assert set(ledger.iter_account_ids()) == ids
