from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from storesync.core.logging import redact
from storesync.db.models import SyncLog, SyncStatus

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 50


def sanitize_error_message(message: str) -> str:
    return redact(message)


def error_detail(exc: BaseException) -> str:
    return json.dumps({
        "type": type(exc).__name__,
        "code": getattr(exc, "code", None),
        "message": sanitize_error_message(str(exc))[:1000],
    })


@dataclass
class SyncLogEntry:
    job_name: str
    status: SyncStatus
    message: str
    started_at: datetime
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    store_code: Optional[str] = None
    error_detail: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        return max(0, int((self.completed_at - self.started_at).total_seconds() * 1000))


class SyncLogRecorder:
    """
    Write buffer for the append-only sync_logs table.

    Entries are inserted in completion order; nothing here ever updates a row.
    """

    def __init__(self, session_factory: Callable[[], Session], flush_size: int = 50):
        self._session_factory = session_factory
        self.flush_size = flush_size
        self._buffer: List[SyncLogEntry] = []

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def record(self, entry: SyncLogEntry) -> None:
        self._buffer.append(entry)
        if len(self._buffer) >= self.flush_size:
            self.flush()

    def flush(self) -> int:
        if not self._buffer:
            return 0
        batch = list(self._buffer)
        try:
            with self._session_factory() as db:
                db.add_all([
                    SyncLog(
                        job_name=e.job_name,
                        store_code=e.store_code,
                        status=e.status.value,
                        message=e.message,
                        error_detail=e.error_detail,
                        duration_ms=e.duration_ms,
                        started_at=e.started_at,
                        completed_at=e.completed_at,
                    )
                    for e in batch
                ])
                db.commit()
        except Exception:
            # rows stay buffered for the next flush
            logger.exception("sync log flush failed", extra={"pending": len(batch)})
            raise
        del self._buffer[:len(batch)]
        return len(batch)


def get_sync_logs(db: Session, store_code: Optional[str] = None, limit: int = DEFAULT_PAGE_SIZE) -> List[SyncLog]:
    limit = min(max(int(limit or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    q = select(SyncLog)
    if store_code:
        q = q.where(SyncLog.store_code == store_code)
    q = q.order_by(SyncLog.completed_at.desc(), SyncLog.id.desc()).limit(limit)
    return list(db.execute(q).scalars())
