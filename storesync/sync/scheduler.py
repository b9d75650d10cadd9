"""Cron triggers for the sync jobs plus the periodic cleanup job."""
from __future__ import annotations
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from storesync.core.config import Settings
from storesync.services.sync import JOB_REFRESH_TOKENS, JOB_SYNC_USER, JOB_SYNC_VIDEO
from storesync.sync.orchestrator import SyncJob, SyncOrchestrator

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "cleanup"


class SyncScheduler:
    def __init__(
        self,
        cfg: Settings,
        orchestrator: SyncOrchestrator,
        jobs: Dict[str, SyncJob],
        cleanup: Optional[Callable[[], Any]] = None,
    ):
        self.cfg = cfg
        self.orchestrator = orchestrator
        self.jobs = jobs
        self.cleanup = cleanup
        self.scheduler = AsyncIOScheduler(
            timezone=cfg.TZ,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        self._configured = False

    def _configure(self) -> None:
        crons = {
            JOB_REFRESH_TOKENS: self.cfg.CRON_REFRESH_TOKENS,
            JOB_SYNC_USER: self.cfg.CRON_SYNC_USER_DAILY,
            JOB_SYNC_VIDEO: self.cfg.CRON_SYNC_VIDEO_DAILY,
        }
        for name, expr in crons.items():
            job = self.jobs[name]
            self.scheduler.add_job(
                self.safe_execute,
                CronTrigger.from_crontab(expr, timezone=self.cfg.TZ),
                args=[name, self._runner(job)],
                id=name,
                name=name,
                replace_existing=True,
            )
            logger.info(f"Scheduled {name}: {expr} ({self.cfg.TZ})")

        if self.cleanup is not None:
            self.scheduler.add_job(
                self.safe_execute,
                IntervalTrigger(seconds=self.cfg.RATE_LIMIT_CLEANUP_SECONDS),
                args=[CLEANUP_JOB_ID, self._cleanup],
                id=CLEANUP_JOB_ID,
                name=CLEANUP_JOB_ID,
                replace_existing=True,
            )
        self._configured = True

    def _runner(self, job: SyncJob) -> Callable[[], Awaitable[Any]]:
        async def run() -> Any:
            return await self.orchestrator.run_job(job)
        return run

    async def _cleanup(self) -> None:
        self.cleanup()

    @staticmethod
    async def safe_execute(name: str, fn: Callable[[], Awaitable[Any]]) -> None:
        """Run one scheduled job; a failure is logged and never reaches the scheduler."""
        started = time.perf_counter()
        logger.info(f"[CRON] Starting {name}")
        try:
            await fn()
        except Exception:
            logger.exception(f"[CRON] {name} failed")
            return
        logger.info(f"[CRON] {name} completed", extra={
            "duration_ms": int((time.perf_counter() - started) * 1000),
        })

    def start(self) -> bool:
        if not self.cfg.CRON_ENABLED:
            logger.info("Cron jobs disabled via CRON_ENABLED=false")
            return False
        if not self._configured:
            self._configure()
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")
        return True

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shut down")

    def get_jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": j.id,
                "trigger": str(j.trigger),
                "next_run_time": j.next_run_time.isoformat() if j.next_run_time else None,
            }
            for j in self.scheduler.get_jobs()
        ]

    def info(self) -> Dict[str, Any]:
        return {
            "enabled": self.cfg.CRON_ENABLED,
            "running": self.scheduler.running,
            "timezone": self.cfg.TZ,
            "jobs": self.get_jobs() if self.scheduler.running else [],
        }
