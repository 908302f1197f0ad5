"""
Escrow scheduler job registration tests
"""

from unittest.mock import Mock

from config import Config
from jobs.scheduler import JOB_AUTO_RELEASE, JOB_PAYOUT_RECONCILE, JOB_RELEASE_RETRY, EscrowScheduler


class TestEscrowScheduler:

    def test_registers_all_jobs_once(self):
        scheduler = EscrowScheduler(Mock())
        scheduler.setup_jobs()
        scheduler.setup_jobs()

        job_ids = sorted(job.id for job in scheduler.scheduler.get_jobs())
        expected = [JOB_PAYOUT_RECONCILE, JOB_RELEASE_RETRY]
        if Config.AUTO_RELEASE_ENABLED:
            expected.append(JOB_AUTO_RELEASE)
        assert job_ids == sorted(expected)

        for job in scheduler.scheduler.get_jobs():
            assert job.max_instances == 1
            assert job.coalesce is True

    def test_job_errors_do_not_escape(self):
        auto_release = Mock()
        auto_release.process_auto_release.side_effect = RuntimeError("database gone")
        auto_release.retry_failed_releases.return_value = {"candidates": 0}
        scheduler = EscrowScheduler(auto_release)

        assert scheduler.run_auto_release() is None
        assert scheduler.run_release_retry() == {"candidates": 0}

