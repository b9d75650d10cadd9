from __future__ import annotations
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from storesync.core.errors import CredentialRevoked, VaultError
from storesync.core.logging import job_logger, store_logger
from storesync.db.models import AccountStatus, SyncStatus
from storesync.services.tokens import update_account_status
from storesync.sync.audit import SyncLogEntry, SyncLogRecorder, error_detail, sanitize_error_message
from storesync.sync.batch import BatchProcessor
from storesync.sync.locks import StoreLockManager, store_lock_key

logger = logging.getLogger(__name__)

SKIP_MESSAGE = "Sync skipped - another sync is already running"


class TenantStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class SyncJob:
    """A named job: which stores are eligible and what to run for each one."""

    name: str
    sync_fn: Callable[[str], Awaitable[Any]]
    select_stores: Callable[[Session], List[str]]
    concurrency: Optional[int] = None


@dataclass
class TenantOutcome:
    store_code: str
    status: TenantStatus
    message: str = ""
    result: Any = None


@dataclass
class JobSummary:
    job_name: str
    status: SyncStatus
    message: str
    started_at: datetime
    completed_at: datetime
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: List[TenantOutcome] = field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "status": self.status.value,
            "message": self.message,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def aggregate_status(total: int, successful: int, failed: int, skipped: int) -> SyncStatus:
    if total == 0 or (failed == 0 and successful > 0):
        return SyncStatus.SUCCESS
    if failed == 0:
        return SyncStatus.SKIPPED
    # skipped stores were never attempted
    if successful == 0:
        return SyncStatus.FAILED
    return SyncStatus.PARTIAL


def _result_message(result: Any) -> str:
    return getattr(result, "message", None) or "Sync completed"


class SyncOrchestrator:
    """
    Fans a job out over its eligible stores.

    Each store runs under its own lock through the BatchProcessor; one store's
    failure is recorded and counted but never stops the others. Every run
    ends with exactly one aggregate sync_logs row (store_code NULL).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        lock_manager: StoreLockManager,
        batch_processor: BatchProcessor,
        recorder: SyncLogRecorder,
        *,
        concurrency: int = 20,
    ):
        self._session_factory = session_factory
        self.lock_manager = lock_manager
        self.batch = batch_processor
        self.recorder = recorder
        self.concurrency = concurrency
        self._running: Set[str] = set()
        self._last: Dict[str, JobSummary] = {}

    async def run_job(self, job: SyncJob, store_codes: Optional[Iterable[str]] = None) -> JobSummary:
        log = job_logger(job.name)
        started = _now()
        self._running.add(job.name)
        try:
            try:
                eligible = self._load_stores(job, store_codes)
            except Exception as e:
                log.exception("could not load eligible stores")
                summary = JobSummary(job.name, SyncStatus.FAILED,
                                     f"Job could not start: {sanitize_error_message(str(e))}",
                                     started, _now())
                self.recorder.record(SyncLogEntry(
                    job_name=job.name, status=SyncStatus.FAILED, message=summary.message,
                    started_at=started, completed_at=summary.completed_at, error_detail=error_detail(e),
                ))
                return self._finish(summary)

            if not eligible:
                log.warning("no connected accounts to sync")

            concurrency = job.concurrency or self.concurrency
            log.info("starting job", extra={"stores": len(eligible), "concurrency": concurrency})

            def on_progress(processed: int, total: int) -> None:
                log.info("sync progress", extra={"processed": processed, "total": total,
                                                 "percent": round(processed * 100 / total)})

            result = await self.batch.run(
                eligible,
                lambda code: self._run_store(job, code),
                concurrency=concurrency,
                on_progress=on_progress,
                on_error=lambda code, e: log.error("store sync failed",
                                                   extra={"store_code": code, "error": type(e).__name__}),
            )

            outcomes = [
                r.result if r.success else TenantOutcome(r.item, TenantStatus.FAILED,
                                                         sanitize_error_message(str(r.error)))
                for r in result.results
            ]
            skipped = sum(1 for o in outcomes if o.status is TenantStatus.SKIPPED)
            successful = sum(1 for o in outcomes if o.status is TenantStatus.SUCCESS)
            failed = result.failed
            completed = _now()
            status = aggregate_status(result.total, successful, failed, skipped)
            message = (
                f"Synced {successful}/{result.total} stores, {failed} failed, {skipped} skipped "
                f"in {round((completed - started).total_seconds())}s ({concurrency} concurrent)"
            )
            summary = JobSummary(job.name, status, message, started, completed,
                                 total=result.total, successful=successful, failed=failed,
                                 skipped=skipped, outcomes=outcomes)
            self.recorder.record(SyncLogEntry(
                job_name=job.name, status=status, message=message,
                started_at=started, completed_at=completed,
            ))
            log.info("job completed", extra={"status": status.value, "total": result.total,
                                             "successful": successful, "failed": failed,
                                             "skipped": skipped, "duration_ms": summary.duration_ms})
            return self._finish(summary)
        finally:
            self._running.discard(job.name)
            self.recorder.flush()

    def status(self) -> Dict[str, Any]:
        return {
            "running_jobs": sorted(self._running),
            "locked_stores": self.lock_manager.held_keys(),
            "last_runs": {name: s.as_dict() for name, s in self._last.items()},
        }

    # ---- internals ----------------------------------------------------------

    def _finish(self, summary: JobSummary) -> JobSummary:
        self._last[summary.job_name] = summary
        return summary

    def _load_stores(self, job: SyncJob, store_codes: Optional[Iterable[str]]) -> List[str]:
        with self._session_factory() as db:
            eligible = job.select_stores(db)
        if store_codes is None:
            return eligible
        wanted = list(dict.fromkeys(store_codes))
        missing = [c for c in wanted if c not in eligible]
        if missing:
            job_logger(job.name).warning("requested stores are not eligible", extra={"stores": missing})
        return [c for c in wanted if c in eligible]

    async def _run_store(self, job: SyncJob, store_code: str) -> TenantOutcome:
        log = store_logger(store_code)
        started = _now()
        lock = await self.lock_manager.with_lock(store_lock_key(store_code), lambda: job.sync_fn(store_code))

        if lock.skipped:
            log.warning("sync skipped - lock not acquired", extra={"job": job.name})
            self.recorder.record(SyncLogEntry(
                job_name=job.name, store_code=store_code, status=SyncStatus.SKIPPED,
                message=SKIP_MESSAGE, started_at=started,
            ))
            return TenantOutcome(store_code, TenantStatus.SKIPPED, SKIP_MESSAGE)

        if lock.error is not None:
            err = lock.error
            message = self._failure_message(store_code, err)
            self.recorder.record(SyncLogEntry(
                job_name=job.name, store_code=store_code, status=SyncStatus.FAILED,
                message=message, started_at=started, error_detail=error_detail(err),
            ))
            raise err

        message = _result_message(lock.result)
        self.recorder.record(SyncLogEntry(
            job_name=job.name, store_code=store_code, status=SyncStatus.SUCCESS,
            message=message, started_at=started,
        ))
        return TenantOutcome(store_code, TenantStatus.SUCCESS, message, lock.result)

    def _failure_message(self, store_code: str, err: Exception) -> str:
        """Classify a store failure and apply the matching status transition."""
        if isinstance(err, CredentialRevoked):
            self._set_status(store_code, AccountStatus.TOKEN_EXPIRED)
            return "Sync failed - token invalid or expired; store must reconnect"
        if isinstance(err, VaultError):
            # unreadable credentials are never retried; the store must reconnect
            self._set_status(store_code, AccountStatus.DISCONNECTED)
            return "Sync failed - stored credentials could not be decrypted"
        return "Sync failed"

    def _set_status(self, store_code: str, status: AccountStatus) -> None:
        with self._session_factory() as db:
            update_account_status(db, store_code, status)
