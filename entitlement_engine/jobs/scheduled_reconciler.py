"""
Scheduled reconciliation sweeps.

Jobs:
    monthly_reset        1st of the month: zero request counts, recompute limits
    plan_expiry          daily: tracks past their plan end date -> None
    free_trial_aging     daily: Free API accounts get a notice at 14 days and
                         are demoted to None at 21 days
    association_repair   hourly: retry usage-plan associations left pending
    usage_sync           hourly: month-to-date request counts from the gateway
    quota_plan_sync      daily: refresh quota plans from the gateway

Every sweep is best-effort per account: a failing account is rolled back,
logged and counted, and the run continues. A durable job lease keeps two
runs of the same job from overlapping.

Usage:
    python -m entitlement_engine.jobs.scheduled_reconciler plan_expiry
"""

import argparse
import asyncio
import logging
import os
import socket
import sys
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from entitlement_engine.config.settings import EngineSettings, get_settings
from entitlement_engine.models.account import Tier, Track, plan_name_for
from entitlement_engine.models.base import as_utc, utcnow
from entitlement_engine.repositories.account_ledger import AccountLedger
from entitlement_engine.repositories.event_log import JobLeaseRepository
from entitlement_engine.repositories.quota_plans_repo import QuotaPlansRepository
from entitlement_engine.services.account_locks import AccountLockPool, get_account_lock_pool
from entitlement_engine.services.notifications import TrialNotifier
from entitlement_engine.services.quota_gateway import QuotaAssociationGateway

logger = logging.getLogger(__name__)

JOBS = (
    "monthly_reset",
    "plan_expiry",
    "free_trial_aging",
    "association_repair",
    "usage_sync",
    "quota_plan_sync",
)


class SweepStats:
    """Track sweep run statistics."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        self.accounts_checked = 0
        self.accounts_updated = 0
        self.notices_sent = 0
        self.associations_pending = 0
        self.errors = 0
        self.skipped = False
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "job_name": self.job_name,
            "accounts_checked": self.accounts_checked,
            "accounts_updated": self.accounts_updated,
            "notices_sent": self.notices_sent,
            "associations_pending": self.associations_pending,
            "errors": self.errors,
            "skipped": self.skipped,
            "duration_seconds": duration,
        }


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ScheduledReconciler:
    """Runs the time-based sweeps against the account ledger."""

    def __init__(
        self,
        db_session: Session,
        gateway: QuotaAssociationGateway,
        notifier: Optional[TrialNotifier] = None,
        settings: Optional[EngineSettings] = None,
        locks: Optional[AccountLockPool] = None,
        clock: Callable = utcnow,
        owner: Optional[str] = None,
    ):
        self.db = db_session
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.locks = locks or get_account_lock_pool()
        self.clock = clock
        self.owner = owner or _default_owner()

        self.ledger = AccountLedger(db_session)
        self.plans = QuotaPlansRepository(db_session)
        self.leases = JobLeaseRepository(db_session)

    async def run(self, job_name: str) -> dict:
        """
        Run one job under its lease.

        Returns:
            Statistics dictionary; ``skipped`` is True when another run
            holds the lease
        """
        if job_name not in JOBS:
            raise ValueError(f"Unknown job: {job_name}")

        stats = SweepStats(job_name)
        if not self.leases.acquire(job_name, self.owner, self.settings.job_lease_seconds):
            stats.skipped = True
            logger.info("Job already running elsewhere, skipping", extra={"job_name": job_name})
            return stats.to_dict()

        logger.info("Starting sweep", extra={"job_name": job_name})
        try:
            await getattr(self, f"_{job_name}")(stats)
        finally:
            self.leases.release(job_name, self.owner)

        result = stats.to_dict()
        logger.info("Sweep completed", extra=result)
        return result

    async def run_monthly_reset(self) -> dict:
        return await self.run("monthly_reset")

    async def run_plan_expiry(self) -> dict:
        return await self.run("plan_expiry")

    async def run_free_trial_aging(self) -> dict:
        return await self.run("free_trial_aging")

    async def run_association_repair(self) -> dict:
        return await self.run("association_repair")

    async def run_usage_sync(self) -> dict:
        return await self.run("usage_sync")

    async def run_quota_plan_sync(self) -> dict:
        return await self.run("quota_plan_sync")

    # Per-account plumbing

    async def _for_each(self, account_ids, stats: SweepStats, apply) -> None:
        for account_id in account_ids:
            stats.accounts_checked += 1
            try:
                async with self.locks.hold(account_id):
                    account = self.ledger.get(account_id, for_update=True)
                    if account is None:
                        continue
                    if await apply(account, stats):
                        stats.accounts_updated += 1
            except Exception as e:
                self.db.rollback()
                stats.errors += 1
                logger.error("Sweep failed for account", extra={
                    "job_name": stats.job_name,
                    "account_id": account_id,
                    "error": str(e),
                }, exc_info=True)

    def _align_tracks(self, account, tracks, stats: SweepStats) -> None:
        for track in tracks:
            if not self.gateway.align(account, track):
                stats.associations_pending += 1
        self.db.commit()

    def _deprovision(self, account, track: Track) -> None:
        account.mark_association_pending(track, account.tier_for(track))
        account.set_tier(track, Tier.NONE)
        account.set_request_limit(track, 0)
        account.set_plan_end_date(track, None)
        account.set_subscription_ref(track, None)

    # Jobs

    async def _monthly_reset(self, stats: SweepStats) -> None:
        async def apply(account, stats):
            for track in Track:
                account.set_request_count(track, 0)
                account.set_request_limit(track, self.plans.request_limit_for(track, account.tier_for(track)))
            self.db.commit()
            return True

        await self._for_each(self.ledger.iter_account_ids(), stats, apply)

    async def _plan_expiry(self, stats: SweepStats) -> None:
        now = self.clock()

        async def apply(account, stats):
            expired = []
            for track in Track:
                end = as_utc(account.plan_end_date_for(track))
                if end is None or end > now:
                    continue
                if account.tier_for(track) == Tier.NONE:
                    account.set_plan_end_date(track, None)
                    continue
                logger.info("Plan expired", extra={
                    "account_id": account.id,
                    "track": track.value,
                    "tier": account.tier_for(track).value,
                    "plan_end_date": end.isoformat(),
                })
                self._deprovision(account, track)
                expired.append(track)
            self.db.commit()
            self._align_tracks(account, expired, stats)
            return bool(expired)

        await self._for_each(self.ledger.ids_with_plan_end_date(), stats, apply)

    async def _free_trial_aging(self, stats: SweepStats) -> None:
        now = self.clock()
        notice_after = timedelta(days=self.settings.free_trial_notice_days)
        trial_length = timedelta(days=self.settings.free_trial_length_days)

        async def apply(account, stats):
            if account.tier_for(Track.API) != Tier.FREE:
                return False
            age = now - as_utc(account.created_at)

            if age >= trial_length:
                logger.info("Free trial ended", extra={
                    "account_id": account.id,
                    "age_days": age.days,
                })
                self._deprovision(account, Track.API)
                self.db.commit()
                self._align_tracks(account, [Track.API], stats)
                return True

            if age >= notice_after and account.trial_notice_sent_at is None:
                if self.notifier is None or not account.contact:
                    return False
                await self.notifier.send_trial_ending_notice(account.contact)
                account.trial_notice_sent_at = now
                self.db.commit()
                stats.notices_sent += 1
                return True

            return False

        await self._for_each(self.ledger.ids_on_tier(Track.API, Tier.FREE), stats, apply)

    async def _association_repair(self, stats: SweepStats) -> None:
        async def apply(account, stats):
            pending = [t for t in Track if account.association_pending_from(t) is not None]
            before = stats.associations_pending
            self._align_tracks(account, pending, stats)
            return stats.associations_pending == before

        await self._for_each(self.ledger.ids_with_pending_association(), stats, apply)

    async def _usage_sync(self, stats: SweepStats) -> None:
        today = self.clock().date()
        month_start = today + relativedelta(day=1)

        async def apply(account, stats):
            if not account.external_api_key_ref:
                return False
            changed = False
            for track in Track:
                plan_name = plan_name_for(track, account.tier_for(track))
                if plan_name is None:
                    continue
                used = self.gateway.usage_for(account.external_api_key_ref, plan_name, month_start, today)
                if used != account.request_count_for(track):
                    account.set_request_count(track, used)
                    changed = True
            self.db.commit()
            return changed

        await self._for_each(self.ledger.iter_account_ids(), stats, apply)

    async def _quota_plan_sync(self, stats: SweepStats) -> None:
        for plan in self.gateway.list_plans():
            stats.accounts_checked += 1
            try:
                self.plans.upsert(
                    name=plan.name,
                    external_plan_id=plan.external_plan_id,
                    requests_per_month=plan.requests_per_month,
                    requests_per_second=plan.requests_per_second,
                    burst_requests_per_second=plan.burst_requests_per_second,
                    description=plan.description,
                )
                self.db.commit()
                stats.accounts_updated += 1
            except Exception as e:
                self.db.rollback()
                stats.errors += 1
                logger.error("Quota plan sync failed", extra={
                    "plan_name": plan.name,
                    "error": str(e),
                })


async def run_job(job_name: str) -> dict:
    """Build collaborators from the environment and run one job."""
    from entitlement_engine.database.session import get_session_factory
    from entitlement_engine.services.notifications import get_trial_notifier
    from entitlement_engine.services.quota_gateway import build_quota_gateway

    settings = get_settings()
    session = get_session_factory()()
    try:
        reconciler = ScheduledReconciler(
            session,
            gateway=build_quota_gateway(session, settings),
            notifier=get_trial_notifier(settings),
            settings=settings,
        )
        return await reconciler.run(job_name)
    finally:
        session.close()


def main(argv=None):
    """Entry point for running a sweep from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(description="Run an entitlement reconciliation sweep")
    parser.add_argument("job", choices=JOBS)
    args = parser.parse_args(argv)

    try:
        result = asyncio.run(run_job(args.job))
        print(f"Sweep completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
