"""
Integration tests for the reconciliation engine.

Runs the real processors, sweeps and gateway together against the test
database; only the API Gateway, Stripe and the chain are mocked.

Tests cover:
- Account lifecycle: signup, deposit, subscription, swap, expiry
- Signed webhook delivery through to the ledger
- Concurrent events for one account
- Recovery of a lagging usage-plan association
"""

import asyncio
import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from entitlement_engine.integrations.aws.usage_plan_client import UsagePlanAPIError
from entitlement_engine.integrations.stripe.billing_platform import StripeBillingPlatform
from entitlement_engine.jobs.scheduled_reconciler import ScheduledReconciler
from entitlement_engine.models.account import Tier, Track
from entitlement_engine.schemas.events import DepositEvent, SubscriptionCreated, SubscriptionDeleted
from entitlement_engine.services.account_provisioning import AccountProvisioner
from entitlement_engine.services.deposit_processor import DepositEventProcessor
from entitlement_engine.services.subscription_processor import SubscriptionEventProcessor
from entitlement_engine.tests.conftest import FIXED_NOW, PLAN_QUOTAS, plan_id

pytestmark = pytest.mark.integration

WALLET = "0x" + "9a" * 20
WEBHOOK_SECRET = "whsec_integration"
API_GROWTH = "prod_Qs8muZH1YGmilO"
API_BUSINESS = "prod_Qs8nm4g18RXJmY"


# =============================================================================
# Test Setup
# =============================================================================


class Clock:
    """Mutable clock shared by every component in a scenario."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(FIXED_NOW)


@pytest.fixture
def billing_platform():
    platform = MagicMock(wraps=StripeBillingPlatform(api_key="sk_test", webhook_secret=WEBHOOK_SECRET))
    platform.cancel_subscription = MagicMock()
    platform.create_customer = MagicMock(return_value="cus_integration")
    return platform


@pytest.fixture
def price_oracle():
    oracle = AsyncMock()
    oracle.token_usd_price.return_value = Decimal("2")
    return oracle


@pytest.fixture
def engine(db_session, gateway, billing_platform, price_oracle, settings, catalog, locks, clock):
    """All engine components wired to one session."""
    provisioner = AccountProvisioner(db_session, gateway, billing_platform=billing_platform, settings=settings)
    notifier = AsyncMock()
    return {
        "provisioner": provisioner,
        "notifier": notifier,
        "subscriptions": SubscriptionEventProcessor(
            db_session, gateway,
            billing_platform=billing_platform,
            notifier=notifier,
            catalog=catalog,
            settings=settings,
            locks=locks,
            clock=clock,
        ),
        "deposits": DepositEventProcessor(
            db_session, gateway, price_oracle,
            provisioner=provisioner,
            catalog=catalog,
            settings=settings,
            locks=locks,
            clock=clock,
        ),
        "sweeps": ScheduledReconciler(
            db_session, gateway,
            notifier=notifier,
            settings=settings,
            locks=locks,
            clock=clock,
            owner="integration",
        ),
    }


def signed(payload: dict):
    body = json.dumps(payload)
    timestamp = int(time.time())
    digest = hmac.new(
        WEBHOOK_SECRET.encode("utf-8"),
        f"{timestamp}.{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return body.encode("utf-8"), f"t={timestamp},v1={digest}"


def stripe_event(event_id, event_type, customer, subscription, product, unit_amount=2900):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": subscription,
            "customer": customer,
            "items": {"data": [{"price": {"product": product, "unit_amount": unit_amount}}]},
        }},
    }


# =============================================================================
# Scenarios
# =============================================================================


class TestAccountLifecycle:
    """End-to-end walk through one account's entitlements."""

    @pytest.mark.asyncio
    async def test_deposit_then_expiry(self, engine, clock, usage_plan_client, quota_plans):
        # 4 tokens at 2 USD buy 8 USD of Growth at 6.67/day
        result = await engine["deposits"].process(DepositEvent(
            wallet_address=WALLET,
            amount_raw=4 * 10 ** 18,
            tier_code=1,
            track=Track.RPC,
            transaction_hash="0x" + "5e" * 32,
        ))
        assert result.processed is True

        account = engine["provisioner"].ledger.find_by_wallet(WALLET)
        assert account.tier_for(Track.RPC) == Tier.GROWTH
        assert account.rpc_request_limit == PLAN_QUOTAS[Tier.GROWTH] // 10

        clock.advance(days=1)
        stats = await engine["sweeps"].run_plan_expiry()
        assert stats["accounts_updated"] == 0
        assert account.tier_for(Track.RPC) == Tier.GROWTH

        clock.advance(hours=5)
        stats = await engine["sweeps"].run_plan_expiry()
        assert stats["accounts_updated"] == 1
        assert account.tier_for(Track.RPC) == Tier.NONE
        usage_plan_client.delete_usage_plan_key.assert_called_with(
            plan_id(Track.RPC, Tier.GROWTH), account.external_api_key_ref
        )

    @pytest.mark.asyncio
    async def test_signup_subscribe_swap_and_cancel(self, engine, billing_platform, quota_plans):
        referrer = engine["provisioner"].create_account(email="referrer@example.com")
        account = engine["provisioner"].create_account(
            email="member@example.com",
            referrer_code=referrer.referral_code,
            create_billing_customer=True,
        )
        assert account.billing_customer_ref == "cus_integration"

        body, signature = signed(stripe_event(
            "evt_1", "customer.subscription.created", "cus_integration", "sub_growth", API_GROWTH, 2000,
        ))
        event = billing_platform.parse_webhook(body, signature)
        result = await engine["subscriptions"].process(event)

        assert result.processed is True
        assert account.tier_for(Track.API) == Tier.GROWTH
        assert referrer.referral_points == Decimal("150")

        body, signature = signed(stripe_event(
            "evt_2", "customer.subscription.created", "cus_integration", "sub_business", API_BUSINESS, 4000,
        ))
        await engine["subscriptions"].process(billing_platform.parse_webhook(body, signature))

        assert account.tier_for(Track.API) == Tier.BUSINESS
        billing_platform.cancel_subscription.assert_called_once_with("sub_growth")
        assert referrer.referral_points == Decimal("450")

        # Stripe reports the cancellation we made
        body, signature = signed(stripe_event(
            "evt_3", "customer.subscription.deleted", "cus_integration", "sub_growth", API_GROWTH,
        ))
        result = await engine["subscriptions"].process(billing_platform.parse_webhook(body, signature))

        assert result.skipped_reason == "self_cancellation"
        assert account.tier_for(Track.API) == Tier.BUSINESS

        # The user cancels the surviving subscription
        body, signature = signed(stripe_event(
            "evt_4", "customer.subscription.deleted", "cus_integration", "sub_business", API_BUSINESS,
        ))
        await engine["subscriptions"].process(billing_platform.parse_webhook(body, signature))

        assert account.tier_for(Track.API) == Tier.NONE
        assert account.api_request_limit == 0


class TestConcurrentEvents:
    """Events for one account arriving together."""

    @pytest.mark.asyncio
    async def test_redelivered_event_applied_once(self, engine, make_account, usage_plan_client, quota_plans):
        account = make_account()
        event = SubscriptionCreated(
            id="evt_race",
            customer_ref=account.billing_customer_ref,
            subscription_ref="sub_race",
            product_ref=API_GROWTH,
        )

        results = await asyncio.gather(
            engine["subscriptions"].process(event),
            engine["subscriptions"].process(event),
        )

        assert sorted(r.processed for r in results) == [False, True]
        assert account.tier_for(Track.API) == Tier.GROWTH
        assert usage_plan_client.create_usage_plan_key.call_count == 1

    @pytest.mark.asyncio
    async def test_deposit_and_deletion_on_different_tracks(self, engine, make_account, quota_plans):
        account = make_account(wallet_address=WALLET, api_tier="Growth", api_subscription_ref="sub_1")

        await asyncio.gather(
            engine["deposits"].process(DepositEvent(
                wallet_address=WALLET,
                amount_raw=10 ** 18,
                tier_code=0,
                track=Track.RPC,
                transaction_hash="0x" + "7c" * 32,
            )),
            engine["subscriptions"].process(SubscriptionDeleted(
                id="evt_del",
                customer_ref=account.billing_customer_ref,
                subscription_ref="sub_1",
                product_ref=API_GROWTH,
            )),
        )

        assert account.tier_for(Track.RPC) == Tier.STARTER
        assert account.tier_for(Track.API) == Tier.NONE


class TestAssociationRecovery:
    """A usage-plan outage does not lose tier changes."""

    @pytest.mark.asyncio
    async def test_repair_sweep_catches_up(self, engine, make_account, usage_plan_client, quota_plans):
        account = make_account()
        usage_plan_client.create_usage_plan_key.side_effect = UsagePlanAPIError("unavailable", status_code=503)

        result = await engine["subscriptions"].process(SubscriptionCreated(
            id="evt_outage",
            customer_ref=account.billing_customer_ref,
            subscription_ref="sub_outage",
            product_ref=API_GROWTH,
        ))

        assert result.association_pending is True
        assert account.tier_for(Track.API) == Tier.GROWTH

        usage_plan_client.create_usage_plan_key.side_effect = None
        stats = await engine["sweeps"].run_association_repair()

        assert stats["accounts_updated"] == 1
        assert account.association_pending_from(Track.API) is None
        usage_plan_client.create_usage_plan_key.assert_called_with(
            plan_id(Track.API, Tier.GROWTH), account.external_api_key_ref
        )
