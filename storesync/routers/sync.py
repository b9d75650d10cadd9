from __future__ import annotations
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from storesync.db.models import as_utc
from storesync.db.session import get_db
from storesync.routers.auth import STORE_CODE_PATTERN
from storesync.security.internal import require_internal
from storesync.security.ratelimit import limit_admin
from storesync.services.sync import JOB_KINDS
from storesync.sync.audit import DEFAULT_PAGE_SIZE, get_sync_logs

router = APIRouter(
    prefix="/admin/sync",
    tags=["sync"],
    dependencies=[Depends(require_internal), Depends(limit_admin)],
)

class TriggerReq(BaseModel):
    store_code: Optional[str] = Field(None, pattern=STORE_CODE_PATTERN)
    job: Literal["all", "user", "video", "refresh_tokens"] = "all"

class StoreOutcome(BaseModel):
    store_code: str
    status: str
    message: str

class TriggerResp(BaseModel):
    job_name: str
    status: str
    message: str
    total: int
    successful: int
    failed: int
    skipped: int
    duration_ms: int
    stores: List[StoreOutcome] = []

@router.post("/run", response_model=TriggerResp, summary="Run a sync job now, for one store or all")
async def trigger_sync(payload: TriggerReq, request: Request):
    job = request.app.state.jobs[JOB_KINDS[payload.job]]
    store_codes = [payload.store_code] if payload.store_code else None
    summary = await request.app.state.orchestrator.run_job(job, store_codes)
    return TriggerResp(
        **{k: v for k, v in summary.as_dict().items() if k in TriggerResp.model_fields},
        stores=[StoreOutcome(store_code=o.store_code, status=o.status.value, message=o.message)
                for o in summary.outcomes],
    )

@router.get("/status", summary="Running jobs, held store locks and last run per job")
def sync_status(request: Request):
    scheduler = request.app.state.scheduler
    return {
        **request.app.state.orchestrator.status(),
        "scheduler": scheduler.info() if scheduler is not None else {"enabled": False},
    }

class SyncLogOut(BaseModel):
    id: int
    job_name: str
    store_code: Optional[str] = None
    status: str
    message: Optional[str] = None
    error_detail: Optional[str] = None
    duration_ms: Optional[int] = None
    started_at: datetime
    completed_at: datetime

@router.get("/logs", response_model=List[SyncLogOut], summary="Most recent sync audit rows")
def sync_logs(
    store_code: Optional[str] = Query(None, pattern=STORE_CODE_PATTERN),
    limit: int = Query(DEFAULT_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    return [
        SyncLogOut(
            id=r.id, job_name=r.job_name, store_code=r.store_code, status=r.status,
            message=r.message, error_detail=r.error_detail, duration_ms=r.duration_ms,
            started_at=as_utc(r.started_at), completed_at=as_utc(r.completed_at),
        )
        for r in get_sync_logs(db, store_code=store_code, limit=limit)
    ]
