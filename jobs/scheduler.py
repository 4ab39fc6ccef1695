"""
APScheduler wiring for the periodic back-office jobs.

Cart recovery and payment release run on fixed intervals. Webhook logs are
an append-only audit trail and are never pruned here.
"""

import logging
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from jobs.cart_recovery import process_cart_recovery
from jobs.payment_release import run_payment_release
from config import Config

logger = logging.getLogger(__name__)


class CheckoutScheduler:
    """Owns one AsyncIOScheduler; every job is single-instance and coalesced"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            # skip missed runs instead of replaying them
            job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 120},
            timezone='UTC',
        )

    def setup_jobs(self):
        """Register the periodic jobs"""

        # setup_jobs may run again after a restart
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 SCHEDULER: Dropped stale job {job.id}")

        # ===== CART RECOVERY =====
        self.scheduler.add_job(
            process_cart_recovery,
            trigger=IntervalTrigger(
                minutes=Config.RECOVERY_PROCESSING_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=5, microsecond=0)
            ),
            id="cart_recovery",
            name="📧 Cart Recovery - Sales Recovery Emails",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Cart Recovery scheduled every {Config.RECOVERY_PROCESSING_INTERVAL_MINUTES} minutes")

        # ===== PAYMENT RELEASE =====
        self.scheduler.add_job(
            run_payment_release,
            trigger=IntervalTrigger(
                minutes=Config.PAYMENT_RELEASE_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=35, microsecond=0)
            ),
            id="payment_release",
            name="💰 Payment Release - Credit Held Sales",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Payment Release scheduled every {Config.PAYMENT_RELEASE_INTERVAL_MINUTES} minutes")

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 SCHEDULER: Registered {[f'{job.name} ({job.id})' for job in jobs]}")

    def start(self):
        """Register the jobs and start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ SCHEDULER ENABLED: Back-office jobs running")

    def stop(self):
        """Shut down without waiting for running jobs"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 SCHEDULER: Stopped")


_global_scheduler = None


def get_scheduler_instance() -> CheckoutScheduler:
    """Process-wide scheduler, created on first use"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = CheckoutScheduler()
    return _global_scheduler
