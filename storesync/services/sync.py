from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from storesync.core.config import Settings
from storesync.db.models import StoreUserDaily, StoreVideoDaily
from storesync.services.access_tokens import ensure_access_token, refresh_store_token
from storesync.services.crypto import TokenVault
from storesync.services.provider_api import ProviderApiClient, UserStats, VideoStats
from storesync.services.provider_oauth import ProviderOAuthClient
from storesync.services.tokens import (
    get_connected_store_codes,
    get_store_codes_needing_refresh,
    update_last_sync_time,
)
from storesync.sync.orchestrator import SyncJob

logger = logging.getLogger(__name__)

JOB_SYNC_FULL = "sync_full"
JOB_SYNC_USER = "sync_user_daily"
JOB_SYNC_VIDEO = "sync_video_daily"
JOB_REFRESH_TOKENS = "refresh_tokens"

# request "job" values -> registered job names
JOB_KINDS = {
    "all": JOB_SYNC_FULL,
    "user": JOB_SYNC_USER,
    "video": JOB_SYNC_VIDEO,
    "refresh_tokens": JOB_REFRESH_TOKENS,
}


@dataclass
class StoreSyncResult:
    store_code: str
    message: str
    records: int = 0


@dataclass
class SyncContext:
    """Everything a per-store sync function needs, built once by create_app."""

    session_factory: Callable[[], Session]
    vault: TokenVault
    oauth: ProviderOAuthClient
    api: ProviderApiClient
    cfg: Settings


def _today() -> date:
    return datetime.now(timezone.utc).date()


def upsert_user_daily(db: Session, store_code: str, stats: UserStats, snapshot_date: date) -> StoreUserDaily:
    row = db.execute(
        select(StoreUserDaily).where(
            StoreUserDaily.store_code == store_code,
            StoreUserDaily.snapshot_date == snapshot_date,
        )
    ).scalar_one_or_none()
    if row is None:
        row = StoreUserDaily(store_code=store_code, snapshot_date=snapshot_date)
        db.add(row)
    row.follower_count = stats.follower_count
    row.following_count = stats.following_count
    row.likes_count = stats.likes_count
    row.video_count = stats.video_count
    row.display_name = stats.display_name
    row.avatar_url = stats.avatar_url
    db.commit()
    return row


def upsert_video_daily(db: Session, store_code: str, videos: List[VideoStats], snapshot_date: date) -> int:
    existing = {
        r.video_id: r
        for r in db.execute(
            select(StoreVideoDaily).where(
                StoreVideoDaily.store_code == store_code,
                StoreVideoDaily.snapshot_date == snapshot_date,
            )
        ).scalars()
    }
    for v in videos:
        row = existing.get(v.video_id)
        if row is None:
            row = StoreVideoDaily(store_code=store_code, video_id=v.video_id, snapshot_date=snapshot_date)
            db.add(row)
            existing[v.video_id] = row
        row.view_count = v.view_count
        row.like_count = v.like_count
        row.comment_count = v.comment_count
        row.share_count = v.share_count
        row.create_time = v.create_time
        row.description = v.description
        row.cover_image_url = v.cover_image_url
        row.share_url = v.share_url
    db.commit()
    return len(videos)


async def sync_user_stats(ctx: SyncContext, store_code: str) -> StoreSyncResult:
    with ctx.session_factory() as db:
        token = await ensure_access_token(db, ctx.vault, ctx.oauth, store_code=store_code)
        stats = await ctx.api.get_user_info(token)
        upsert_user_daily(db, store_code, stats, _today())
        update_last_sync_time(db, store_code)
    return StoreSyncResult(
        store_code, f"User stats synced: {stats.follower_count} followers, {stats.video_count} videos", 1
    )


async def sync_video_stats(ctx: SyncContext, store_code: str) -> StoreSyncResult:
    with ctx.session_factory() as db:
        token = await ensure_access_token(db, ctx.vault, ctx.oauth, store_code=store_code)
        videos = await ctx.api.fetch_all_videos(token, max_videos=ctx.cfg.VIDEO_SYNC_MAX_VIDEOS)
        count = upsert_video_daily(db, store_code, videos, _today())
        update_last_sync_time(db, store_code)
    return StoreSyncResult(store_code, f"Video stats synced: {count} videos", count)


async def sync_full(ctx: SyncContext, store_code: str) -> StoreSyncResult:
    user = await sync_user_stats(ctx, store_code)
    video = await sync_video_stats(ctx, store_code)
    return StoreSyncResult(store_code, f"{user.message}; {video.message}", user.records + video.records)


async def refresh_tokens(ctx: SyncContext, store_code: str) -> StoreSyncResult:
    with ctx.session_factory() as db:
        await refresh_store_token(db, ctx.vault, ctx.oauth, store_code=store_code)
    return StoreSyncResult(store_code, "Token refreshed")


def build_jobs(ctx: SyncContext) -> Dict[str, SyncJob]:
    """The job registry shared by the scheduler and the admin trigger endpoint."""
    hours = ctx.cfg.TOKEN_REFRESH_WINDOW_HOURS
    jobs = [
        SyncJob(JOB_SYNC_FULL, lambda code: sync_full(ctx, code), get_connected_store_codes),
        SyncJob(JOB_SYNC_USER, lambda code: sync_user_stats(ctx, code), get_connected_store_codes),
        SyncJob(JOB_SYNC_VIDEO, lambda code: sync_video_stats(ctx, code), get_connected_store_codes,
                concurrency=ctx.cfg.VIDEO_SYNC_CONCURRENCY),
        SyncJob(JOB_REFRESH_TOKENS, lambda code: refresh_tokens(ctx, code),
                lambda db: get_store_codes_needing_refresh(db, hours)),
    ]
    return {j.name: j for j in jobs}
