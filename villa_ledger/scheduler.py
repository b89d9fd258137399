"""
In-process scheduler for rate refresh and maintenance sweeps.

Run with ``python -m villa_ledger.scheduler`` (APScheduler loop) or ``--once``
(a single refresh plus a single sweep, for cron). The same work is exposed
over HTTP under /tasks, so deployments can use either; concurrent refreshes
from both are coalesced by the rate cache.
"""

from __future__ import annotations

import argparse
import signal
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.engine import Engine

from villa_ledger.config import MAINTENANCE_INTERVAL_SECONDS, RATE_REFRESH_INTERVAL_SECONDS
from villa_ledger.logging_config import setup_logging
from villa_ledger.network.gateway import GatewayClient
from villa_ledger.services.availability import AvailabilityLedger
from villa_ledger.services.notifications import build_notifier
from villa_ledger.services.payments import PaymentAuthenticator
from villa_ledger.services.rate_cache import RateCache, RefreshReport
from villa_ledger.services.reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)


def run_maintenance(
    payments: PaymentAuthenticator,
    ledger: AvailabilityLedger,
    reconciler: WebhookReconciler,
) -> dict[str, int]:
    """
    Expire abandoned sessions and lapsed locks, then re-drive PENDING webhooks.

    Sessions go first so their locks are released with the session failure.

    Returns:
        dict: Counts of expired sessions, expired locks and recovered webhooks
    """
    summary = {
        "sessions_expired": payments.expire_stale_sessions(),
        "locks_expired": ledger.expire_stale_locks(),
        "webhooks_recovered": len(reconciler.recover_pending()),
    }
    logger.info("maintenance_completed", **summary)
    return summary


class Scheduler:
    """
    Registers rate refresh and maintenance as APScheduler interval jobs.

    Both jobs fire once immediately on start. A job that is still running
    when its next slot comes up is not started twice; a failing job is logged
    and runs again at its next slot.
    """

    def __init__(
        self,
        rate_cache: RateCache,
        payments: PaymentAuthenticator,
        ledger: AvailabilityLedger,
        reconciler: WebhookReconciler,
        rate_interval: float = RATE_REFRESH_INTERVAL_SECONDS,
        maintenance_interval: float = MAINTENANCE_INTERVAL_SECONDS,
        scheduler: Optional[BaseScheduler] = None,
    ):
        self.rate_cache = rate_cache
        self.payments = payments
        self.ledger = ledger
        self.reconciler = reconciler
        self.rate_interval = rate_interval
        self.maintenance_interval = maintenance_interval
        self.scheduler = scheduler or BlockingScheduler(timezone=timezone.utc)
        self._jobs_registered = False

    def refresh_rates(self) -> Optional[RefreshReport]:
        try:
            report = self.rate_cache.refresh()
        except Exception:
            logger.exception("scheduled_rate_refresh_failed")
            return None
        logger.info(
            "scheduled_rate_refresh_completed",
            fetched=report.fetched_count,
            failed_batches=report.failed_batches,
        )
        return report

    def maintain(self) -> Optional[dict[str, int]]:
        try:
            return run_maintenance(self.payments, self.ledger, self.reconciler)
        except Exception:
            logger.exception("scheduled_maintenance_failed")
            return None

    def register_jobs(self) -> None:
        if self._jobs_registered:
            logger.warning("scheduler_jobs_already_registered")
            return

        first_run = datetime.now(timezone.utc)
        self.scheduler.add_job(
            self.refresh_rates,
            IntervalTrigger(seconds=self.rate_interval),
            id="rate_refresh",
            name="Refresh exchange rates",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=first_run,
        )
        self.scheduler.add_job(
            self.maintain,
            IntervalTrigger(seconds=self.maintenance_interval),
            id="maintenance",
            name="Expire sessions and locks, recover webhooks",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=first_run,
        )
        self._jobs_registered = True
        logger.info(
            "scheduler_jobs_registered",
            rate_interval=self.rate_interval,
            maintenance_interval=self.maintenance_interval,
        )

    def run_once(self) -> dict[str, Any]:
        report = self.refresh_rates()
        return {
            "rates": report.to_dict() if report else None,
            "maintenance": self.maintain(),
        }

    def start(self) -> None:
        """Register the jobs and start the scheduler (blocks for BlockingScheduler)."""
        if self.scheduler.running:
            logger.warning("scheduler_already_running")
            return
        self.register_jobs()
        logger.info("scheduler_started")
        self.scheduler.start()

    def stop(self, *_: Any) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")


def build_scheduler(engine: Engine) -> Scheduler:
    """Wire the services against the given engine with configured clients."""
    rate_cache = RateCache(engine)
    ledger = AvailabilityLedger(engine, rate_cache)
    payments = PaymentAuthenticator(engine, ledger, GatewayClient())
    reconciler = WebhookReconciler(engine, ledger, build_notifier())
    return Scheduler(rate_cache, payments, ledger, reconciler)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run rate refresh and maintenance jobs")
    parser.add_argument("--once", action="store_true", help="Run each job once and exit")
    args = parser.parse_args(argv)

    setup_logging()

    from villa_ledger.db.engine import engine

    scheduler = build_scheduler(engine)
    if args.once:
        scheduler.run_once()
        return

    signal.signal(signal.SIGTERM, scheduler.stop)
    signal.signal(signal.SIGINT, scheduler.stop)
    scheduler.start()


if __name__ == "__main__":
    main()
