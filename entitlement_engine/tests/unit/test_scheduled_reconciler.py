"""
Unit tests for ScheduledReconciler sweeps.

Tests cover:
- Monthly reset (idempotent)
- Plan expiry
- Free-trial notice and demotion
- Association repair
- Usage and quota plan sync
- Per-account failure isolation and job leases
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from entitlement_engine.integrations.aws.usage_plan_client import UsagePlanAPIError
from entitlement_engine.jobs.scheduled_reconciler import JOBS, ScheduledReconciler
from entitlement_engine.models.account import Tier, Track
from entitlement_engine.models.base import utcnow
from entitlement_engine.models.job_lock import JobLock
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository
from entitlement_engine.tests.conftest import FIXED_NOW, PLAN_QUOTAS, plan_id


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def reconciler(db_session, gateway, notifier, settings, locks):
    return ScheduledReconciler(
        db_session,
        gateway,
        notifier=notifier,
        settings=settings,
        locks=locks,
        clock=lambda: FIXED_NOW,
        owner="test-runner",
    )


def aged(days):
    return FIXED_NOW - timedelta(days=days)


class TestMonthlyReset:
    """Tests for the monthly reset sweep."""

    @pytest.mark.asyncio
    async def test_zeroes_counts_and_recomputes_limits(self, reconciler, make_account, quota_plans):
        account = make_account(
            api_tier="Starter",
            api_request_count=812,
            api_request_limit=7,
            rpc_request_count=40,
        )

        stats = await reconciler.run_monthly_reset()

        assert stats["accounts_updated"] == 1
        assert account.api_request_count == 0
        assert account.rpc_request_count == 0
        assert account.api_request_limit == PLAN_QUOTAS[Tier.STARTER]
        assert account.rpc_request_limit == PLAN_QUOTAS[Tier.FREE] // 10

    @pytest.mark.asyncio
    async def test_running_twice_is_idempotent(self, reconciler, make_account, quota_plans):
        account = make_account(api_tier="Growth", api_request_count=5)

        await reconciler.run_monthly_reset()
        first = (account.api_request_count, account.api_request_limit, account.rpc_request_limit)
        await reconciler.run_monthly_reset()

        assert (account.api_request_count, account.api_request_limit, account.rpc_request_limit) == first

    @pytest.mark.asyncio
    async def test_none_tier_limit_is_zero(self, reconciler, make_account, quota_plans):
        account = make_account(rpc_tier="None", rpc_request_limit=99)

        await reconciler.run_monthly_reset()

        assert account.rpc_request_limit == 0


class TestPlanExpiry:
    """Tests for the plan expiry sweep."""

    @pytest.mark.asyncio
    async def test_expired_track_deprovisioned(self, reconciler, make_account, usage_plan_client, quota_plans):
        account = make_account(api_tier="Starter", api_plan_end_date=aged(1), api_subscription_ref="sub_1")

        stats = await reconciler.run_plan_expiry()

        assert stats["accounts_updated"] == 1
        assert account.tier_for(Track.API) == Tier.NONE
        assert account.api_request_limit == 0
        assert account.api_plan_end_date is None
        assert account.api_subscription_ref is None
        assert account.association_pending_from(Track.API) is None
        usage_plan_client.delete_usage_plan_key.assert_called_once_with(
            plan_id(Track.API, Tier.STARTER), account.external_api_key_ref
        )

    @pytest.mark.asyncio
    async def test_future_end_date_untouched(self, reconciler, make_account, quota_plans):
        account = make_account(rpc_tier="Growth", rpc_plan_end_date=FIXED_NOW + timedelta(hours=1))

        stats = await reconciler.run_plan_expiry()

        assert stats["accounts_updated"] == 0
        assert account.tier_for(Track.RPC) == Tier.GROWTH

    @pytest.mark.asyncio
    async def test_only_expired_track_changes(self, reconciler, make_account, quota_plans):
        account = make_account(
            api_tier="Growth",
            api_plan_end_date=FIXED_NOW + timedelta(days=5),
            rpc_tier="Starter",
            rpc_plan_end_date=aged(2),
        )

        await reconciler.run_plan_expiry()

        assert account.tier_for(Track.API) == Tier.GROWTH
        assert account.tier_for(Track.RPC) == Tier.NONE

    @pytest.mark.asyncio
    async def test_association_failure_counted(self, reconciler, make_account, usage_plan_client, quota_plans):
        account = make_account(api_tier="Starter", api_plan_end_date=aged(1))
        usage_plan_client.delete_usage_plan_key.side_effect = UsagePlanAPIError(
            "throttled", error_code="TooManyRequestsException", status_code=429
        )

        stats = await reconciler.run_plan_expiry()

        assert stats["associations_pending"] == 1
        assert account.tier_for(Track.API) == Tier.NONE
        assert account.association_pending_from(Track.API) == Tier.STARTER


class TestFreeTrialAging:
    """Tests for the free trial notice and demotion."""

    @pytest.mark.asyncio
    async def test_demoted_after_trial_length(self, reconciler, make_account, usage_plan_client, quota_plans):
        account = make_account(created_at=aged(21))

        stats = await reconciler.run_free_trial_aging()

        assert stats["accounts_updated"] == 1
        assert account.tier_for(Track.API) == Tier.NONE
        assert account.api_request_limit == 0
        assert account.tier_for(Track.RPC) == Tier.FREE
        usage_plan_client.delete_usage_plan_key.assert_called_once_with(
            plan_id(Track.API, Tier.FREE), account.external_api_key_ref
        )

    @pytest.mark.asyncio
    async def test_notice_sent_once(self, reconciler, make_account, notifier, quota_plans):
        account = make_account(email="trial@example.com", created_at=aged(15))

        first = await reconciler.run_free_trial_aging()
        second = await reconciler.run_free_trial_aging()

        assert first["notices_sent"] == 1
        assert second["notices_sent"] == 0
        notifier.send_trial_ending_notice.assert_awaited_once_with("trial@example.com")
        assert account.trial_notice_sent_at is not None
        assert account.tier_for(Track.API) == Tier.FREE

    @pytest.mark.asyncio
    async def test_young_account_untouched(self, reconciler, make_account, notifier, quota_plans):
        account = make_account(created_at=aged(3))

        await reconciler.run_free_trial_aging()

        assert account.tier_for(Track.API) == Tier.FREE
        notifier.send_trial_ending_notice.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_paid_accounts_ignored(self, reconciler, make_account, quota_plans):
        account = make_account(api_tier="Growth", created_at=aged(60))

        await reconciler.run_free_trial_aging()

        assert account.tier_for(Track.API) == Tier.GROWTH


class TestAssociationRepair:
    """Tests for retrying pending associations."""

    @pytest.mark.asyncio
    async def test_pending_marker_resolved(self, reconciler, make_account, usage_plan_client, quota_plans):
        account = make_account(api_tier="Growth", api_association_pending_from="Free")

        stats = await reconciler.run_association_repair()

        assert stats["accounts_updated"] == 1
        assert account.association_pending_from(Track.API) is None
        usage_plan_client.create_usage_plan_key.assert_called_once_with(
            plan_id(Track.API, Tier.GROWTH), account.external_api_key_ref
        )

    @pytest.mark.asyncio
    async def test_still_failing_stays_pending(self, reconciler, make_account, usage_plan_client, quota_plans):
        account = make_account(api_tier="Growth", api_association_pending_from="Free")
        usage_plan_client.create_usage_plan_key.side_effect = UsagePlanAPIError("boom", status_code=500)

        stats = await reconciler.run_association_repair()

        assert stats["associations_pending"] == 1
        assert stats["accounts_updated"] == 0
        assert account.association_pending_from(Track.API) == Tier.FREE


class TestUsageSync:
    """Tests for month-to-date usage sync."""

    @pytest.mark.asyncio
    async def test_counts_copied_from_gateway(self, reconciler, make_account, usage_plan_client, quota_plans):
        account = make_account()
        key = account.external_api_key_ref

        def usage(plan, key_id, start, end):
            used = 10 if plan == plan_id(Track.API, Tier.FREE) else 3
            return {"items": {key_id: [[used, 0], [used, 0]]}}

        usage_plan_client.get_usage.side_effect = usage

        await reconciler.run_usage_sync()

        assert account.api_request_count == 20
        assert account.rpc_request_count == 6
        usage_plan_client.get_usage.assert_any_call(plan_id(Track.API, Tier.FREE), key, "2025-03-01", "2025-03-15")

    @pytest.mark.asyncio
    async def test_one_failing_account_does_not_stop_the_sweep(
        self, reconciler, make_account, usage_plan_client, quota_plans
    ):
        broken = make_account(api_request_count=1)
        healthy = make_account(api_request_count=1)

        def usage(plan, key_id, start, end):
            if key_id == broken.external_api_key_ref:
                raise UsagePlanAPIError("internal", status_code=500)
            return {"items": {key_id: [[7, 0]]}}

        usage_plan_client.get_usage.side_effect = usage

        stats = await reconciler.run_usage_sync()

        assert stats["errors"] == 1
        assert stats["accounts_checked"] == 2
        assert healthy.api_request_count == 7
        assert broken.api_request_count == 1


class TestQuotaPlanSync:
    """Tests for refreshing quota plans from the gateway."""

    @pytest.mark.asyncio
    async def test_plans_upserted(self, reconciler, usage_plan_client, db_session, quota_plans):
        usage_plan_client.get_usage_plans.return_value = [
            {"id": "up-api-growth", "name": "Growth", "quota": {"limit": 6000000, "period": "MONTH"}},
            {"id": "up-new", "name": "Scale", "quota": {"limit": 20000000, "period": "MONTH"},
             "throttle": {"rateLimit": 100.0, "burstLimit": 200}},
        ]

        stats = await reconciler.run_quota_plan_sync()

        plans = QuotaPlansRepository(db_session)
        assert stats["accounts_updated"] == 2
        assert plans.get_by_name("Growth").requests_per_month == 6000000
        assert plans.get_by_name("Scale").external_plan_id == "up-new"


class TestJobLease:
    """Tests for overlapping runs."""

    @pytest.mark.asyncio
    async def test_held_lease_skips_run(self, reconciler, make_account, db_session, quota_plans):
        account = make_account(api_request_count=9)
        db_session.add(JobLock(
            job_name="monthly_reset",
            owner="other-host",
            locked_at=utcnow(),
            locked_until=utcnow() + timedelta(hours=1),
        ))
        db_session.commit()

        stats = await reconciler.run_monthly_reset()

        assert stats["skipped"] is True
        assert account.api_request_count == 9

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, reconciler, make_account, db_session, quota_plans):
        account = make_account(api_request_count=9)
        db_session.add(JobLock(
            job_name="monthly_reset",
            owner="crashed-host",
            locked_at=utcnow() - timedelta(hours=3),
            locked_until=utcnow() - timedelta(hours=2),
        ))
        db_session.commit()

        stats = await reconciler.run_monthly_reset()

        assert stats["skipped"] is False
        assert account.api_request_count == 0

    @pytest.mark.asyncio
    async def test_lease_released_after_run(self, reconciler, db_session, quota_plans):
        await reconciler.run_quota_plan_sync()

        lock = db_session.get(JobLock, "quota_plan_sync")
        assert lock.owner is None

    @pytest.mark.asyncio
    async def test_unknown_job_rejected(self, reconciler):
        with pytest.raises(ValueError):
            await reconciler.run("reindex")

    def test_job_names(self):
        assert "association_repair" in JOBS
