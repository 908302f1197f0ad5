"""Background job scheduler for escrow automation: auto-release, release retry and payout reconciliation"""

import logging
import signal
import threading
from datetime import datetime, timedelta

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.auto_release_service import AutoReleaseService

logger = logging.getLogger(__name__)

JOB_AUTO_RELEASE = "auto_release_tick"
JOB_RELEASE_RETRY = "release_retry"
JOB_PAYOUT_RECONCILE = "payout_reconciliation"


class EscrowScheduler:
    """Background job scheduler with one instance per job and coalesced misfires"""

    def __init__(self, auto_release: AutoReleaseService):
        self.auto_release = auto_release
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': ThreadPoolExecutor(max_workers=3)
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed ticks into one run
            'max_instances': 1,
            'misfire_grace_time': 120
        }
        self.scheduler = BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the periodic jobs; safe to call again after a reload"""
        for job_id in (JOB_AUTO_RELEASE, JOB_RELEASE_RETRY, JOB_PAYOUT_RECONCILE):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Removed existing {job_id} job before re-registering")

        start = datetime.now() + timedelta(seconds=10)

        if Config.AUTO_RELEASE_ENABLED:
            self.scheduler.add_job(
                self.run_auto_release,
                trigger=IntervalTrigger(minutes=Config.AUTO_RELEASE_CHECK_INTERVAL_MINUTES, start_date=start),
                id=JOB_AUTO_RELEASE,
                name="Auto-release overdue milestones",
                max_instances=1,
                coalesce=True,
            )
        else:
            logger.warning("⚠️ Auto-release disabled - overdue submissions will wait for the brand")

        # Retry failed releases on the auto-release cadence, offset by a minute
        self.scheduler.add_job(
            self.run_release_retry,
            trigger=IntervalTrigger(
                minutes=Config.AUTO_RELEASE_CHECK_INTERVAL_MINUTES, start_date=start + timedelta(minutes=1)
            ),
            id=JOB_RELEASE_RETRY,
            name="Retry failed milestone releases",
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.run_payout_reconciliation,
            trigger=IntervalTrigger(minutes=Config.PAYOUT_RECONCILE_INTERVAL_MINUTES, start_date=start),
            id=JOB_PAYOUT_RECONCILE,
            name="Reconcile stuck PROCESSING payouts",
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"📅 Scheduled {len(self.scheduler.get_jobs())} escrow jobs")

    def run_auto_release(self):
        try:
            return self.auto_release.process_auto_release()
        except Exception as e:
            # Keep the job registered; the next tick picks the work up again
            logger.error(f"❌ Error in auto-release tick: {e}", exc_info=True)
            return None

    def run_release_retry(self):
        try:
            return self.auto_release.retry_failed_releases()
        except Exception as e:
            logger.error(f"❌ Error in release retry pass: {e}", exc_info=True)
            return None

    def run_payout_reconciliation(self):
        try:
            return self.auto_release.reconcile_payouts()
        except Exception as e:
            logger.error(f"❌ Error in payout reconciliation: {e}", exc_info=True)
            return None

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ Escrow scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
        logger.info("🛑 Escrow scheduler stopped")


def main():
    """Run the scheduler as a standalone worker process"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    Config.validate()
    Config.log_environment_config()

    from database import SessionLocal, create_tables, test_connection
    from services.escrow_orchestrator import EscrowOrchestrator
    from services.payment_capability import HttpPaymentCapability

    if not test_connection():
        raise SystemExit(1)
    create_tables()
    orchestrator = EscrowOrchestrator(HttpPaymentCapability(), SessionLocal)
    scheduler = EscrowScheduler(orchestrator.auto_release)

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())

    scheduler.start()
    stop_event.wait()
    scheduler.stop()


if __name__ == "__main__":
    main()
