from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from storesync.core.config import Settings, settings as default_settings
from storesync.core.errors import CredentialRevoked, TransientSyncError

logger = logging.getLogger(__name__)

USER_INFO_FIELDS = [
    "open_id", "display_name", "avatar_url",
    "follower_count", "following_count", "likes_count", "video_count",
]
VIDEO_FIELDS = [
    "id", "create_time", "cover_image_url", "share_url", "video_description",
    "duration", "like_count", "comment_count", "share_count", "view_count",
]
AUTH_ERROR_CODES = {"access_token_invalid", "access_token_expired", "invalid_token"}

PAGE_SIZE = 20  # provider maximum
MAX_PAGES = 100


class ProviderApiError(TransientSyncError):
    def __init__(self, message: str, api_code: str, log_id: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.api_code = api_code
        self.log_id = log_id
        self.status = status

    def is_auth_error(self) -> bool:
        return self.api_code in AUTH_ERROR_CODES or self.status == 401

    def is_retryable(self) -> bool:
        return self.api_code == "rate_limit_exceeded" or self.status == 429 or (self.status or 0) >= 500


@dataclass
class UserStats:
    open_id: str
    display_name: str
    avatar_url: str
    follower_count: int
    following_count: int
    likes_count: int
    video_count: int


@dataclass
class VideoStats:
    video_id: str
    description: str
    create_time: Optional[datetime]
    view_count: int
    like_count: int
    comment_count: int
    share_count: int
    cover_image_url: str
    share_url: str


class ProviderApiClient:
    """Display API reads (profile stats, video list) for one access token at a time."""

    def __init__(
        self,
        cfg: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.cfg = cfg or default_settings
        self._transport = transport
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def _url(self, path: str) -> str:
        return self.cfg.PROVIDER_API_BASE.rstrip("/") + path

    async def _request(self, method: str, path: str, access_token: str, *,
                       params: Dict[str, Any] | None = None,
                       json: Dict[str, Any] | None = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"}
        attempt = 0
        while True:
            try:
                async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                    r = await client.request(method, self._url(path), headers=headers, params=params, json=json)
                return self._handle_response(r)
            except ProviderApiError as e:
                if e.is_auth_error():
                    raise CredentialRevoked(f"provider rejected access token: {e.api_code}") from e
                if not e.is_retryable() or attempt >= self.max_retries:
                    raise
                reason = e.api_code
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise TransientSyncError(f"provider unreachable: {type(e).__name__}") from e
                reason = type(e).__name__
            delay = self.retry_delay * (2 ** attempt)
            logger.warning(f"{path} retry {attempt + 1}/{self.max_retries} in {delay:.1f}s ({reason})")
            await asyncio.sleep(delay)
            attempt += 1

    @staticmethod
    def _handle_response(r: httpx.Response) -> Dict[str, Any]:
        try:
            body = r.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        err = body.get("error") or {}
        if isinstance(err, str):
            # bare OAuth-style error string
            err = {"code": err, "message": body.get("error_description") or err}
        elif not isinstance(err, dict):
            err = {}
        if err.get("code") and err["code"] != "ok":
            raise ProviderApiError(err.get("message") or "provider api error",
                                   str(err["code"]), err.get("log_id", ""), r.status_code)
        if r.status_code >= 400:
            raise ProviderApiError(f"HTTP error {r.status_code}", "http_error", "", r.status_code)
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def get_user_info(self, access_token: str) -> UserStats:
        data = await self._request("GET", "/v2/user/info/", access_token,
                                   params={"fields": ",".join(USER_INFO_FIELDS)})
        user = data.get("user") or {}
        return UserStats(
            open_id=user.get("open_id", ""),
            display_name=user.get("display_name") or "",
            avatar_url=user.get("avatar_url") or "",
            follower_count=int(user.get("follower_count") or 0),
            following_count=int(user.get("following_count") or 0),
            likes_count=int(user.get("likes_count") or 0),
            video_count=int(user.get("video_count") or 0),
        )

    async def list_videos(self, access_token: str, cursor: int = 0, max_count: int = PAGE_SIZE):
        """One page of videos. Returns (videos, next_cursor, has_more)."""
        data = await self._request(
            "POST", "/v2/video/list/", access_token,
            params={"fields": ",".join(VIDEO_FIELDS)},
            json={"cursor": cursor, "max_count": min(max_count, PAGE_SIZE)},
        )
        videos = [self._video(v) for v in data.get("videos") or []]
        return videos, int(data.get("cursor") or 0), bool(data.get("has_more"))

    async def fetch_all_videos(self, access_token: str, max_videos: int = 1000) -> List[VideoStats]:
        out: List[VideoStats] = []
        cursor, has_more, pages = 0, True, 0
        while has_more and len(out) < max_videos:
            videos, cursor, has_more = await self.list_videos(access_token, cursor)
            out.extend(videos)
            pages += 1
            if pages >= MAX_PAGES:
                logger.warning("reached maximum page limit", extra={"pages": pages})
                break
        return out[:max_videos]

    @staticmethod
    def _video(v: Dict[str, Any]) -> VideoStats:
        ct = v.get("create_time")
        return VideoStats(
            video_id=str(v.get("id")),
            description=v.get("video_description") or v.get("title") or "",
            create_time=datetime.fromtimestamp(int(ct), tz=timezone.utc) if ct else None,
            view_count=int(v.get("view_count") or 0),
            like_count=int(v.get("like_count") or 0),
            comment_count=int(v.get("comment_count") or 0),
            share_count=int(v.get("share_count") or 0),
            cover_image_url=v.get("cover_image_url") or "",
            share_url=v.get("share_url") or "",
        )
