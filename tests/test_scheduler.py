"""Tests for cron wiring and the scheduled-job wrapper."""

from unittest.mock import AsyncMock, Mock

import pytest

from storesync.services.sync import JOB_REFRESH_TOKENS, JOB_SYNC_USER, JOB_SYNC_VIDEO
from storesync.sync.orchestrator import SyncJob
from storesync.sync.scheduler import CLEANUP_JOB_ID, SyncScheduler


@pytest.fixture
def jobs():
    async def noop(code):
        return None

    return {
        name: SyncJob(name, noop, lambda db: [])
        for name in (JOB_REFRESH_TOKENS, JOB_SYNC_USER, JOB_SYNC_VIDEO)
    }


class TestSafeExecute:
    async def test_failure_does_not_propagate(self):
        fn = AsyncMock(side_effect=RuntimeError("boom"))
        await SyncScheduler.safe_execute("sync_user_daily", fn)
        fn.assert_awaited_once()

    async def test_success(self):
        fn = AsyncMock(return_value="ok")
        await SyncScheduler.safe_execute("sync_user_daily", fn)
        fn.assert_awaited_once()


class TestSchedulerLifecycle:
    def test_disabled(self, cfg, jobs):
        scheduler = SyncScheduler(cfg, Mock(), jobs)
        assert scheduler.start() is False
        assert scheduler.info()["running"] is False

    async def test_registers_cron_and_cleanup_jobs(self, cfg, jobs):
        enabled = cfg.model_copy(update={"CRON_ENABLED": True, "CRON_SYNC_USER_DAILY": "15 3 * * *"})
        scheduler = SyncScheduler(enabled, Mock(), jobs, cleanup=Mock())
        try:
            assert scheduler.start() is True
            info = scheduler.info()
            ids = {j["id"] for j in info["jobs"]}
            assert ids == {JOB_REFRESH_TOKENS, JOB_SYNC_USER, JOB_SYNC_VIDEO, CLEANUP_JOB_ID}
            user = next(j for j in info["jobs"] if j["id"] == JOB_SYNC_USER)
            assert "hour='3'" in user["trigger"] and "minute='15'" in user["trigger"]
            assert all(j["next_run_time"] for j in info["jobs"])
        finally:
            scheduler.shutdown()

    async def test_scheduled_runner_calls_orchestrator(self, cfg, jobs):
        orchestrator = Mock()
        orchestrator.run_job = AsyncMock()
        scheduler = SyncScheduler(cfg, orchestrator, jobs)

        await scheduler._runner(jobs[JOB_SYNC_VIDEO])()
        orchestrator.run_job.assert_awaited_once_with(jobs[JOB_SYNC_VIDEO])

    async def test_cleanup_runs_callback(self, cfg, jobs):
        cleanup = Mock()
        scheduler = SyncScheduler(cfg, Mock(), jobs, cleanup=cleanup)
        await scheduler.safe_execute(CLEANUP_JOB_ID, scheduler._cleanup)
        cleanup.assert_called_once()
