"""Test configuration and fixtures."""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

TEST_KEY = "0123456789abcdef" * 4
TEST_API_KEY = "test-internal-key"

# Settings are read at import time
os.environ.update(
    {
        "TOKEN_ENC_KEY": TEST_KEY,
        "STATE_SECRET": "test-state-secret",
        "API_INTERNAL_KEY": TEST_API_KEY,
        "DATABASE_URL": "sqlite://",
        "LOG_DIR": tempfile.mkdtemp(prefix="storesync-logs-"),
        "CRON_ENABLED": "false",
        "PROVIDER_CLIENT_KEY": "test-client-key",
        "PROVIDER_CLIENT_SECRET": "test-client-secret",
        "PROVIDER_REDIRECT_URI": "https://app.example.com/auth/provider/callback",
    }
)

from storesync.core.config import Settings  # noqa: E402
from storesync.db.models import AccountStatus, Base, StoreAccount  # noqa: E402
from storesync.db.session import make_session_factory  # noqa: E402
from storesync.services.crypto import TokenVault  # noqa: E402
from storesync.services.provider_api import ProviderApiClient  # noqa: E402
from storesync.services.provider_oauth import ProviderOAuthClient  # noqa: E402
from storesync.services.state import OAuthStateManager  # noqa: E402


class FakeProvider:
    """In-process stand-in for the provider's OAuth and display APIs."""

    def __init__(self):
        self.requests = []
        self.token_responses = []  # queued (status, body); default is a fresh pair
        self.api_responses = []  # queued (status, body) for metrics calls
        self.issued = 0
        self.revoked = set()  # access tokens the display API rejects
        self.user = {
            "open_id": "open-1",
            "display_name": "Store One",
            "avatar_url": "https://cdn.example.com/a.png",
            "follower_count": 120,
            "following_count": 3,
            "likes_count": 900,
            "video_count": 2,
        }
        self.videos = [
            {"id": f"v{i}", "create_time": 1700000000 + i, "view_count": 10 * i,
             "like_count": i, "comment_count": 0, "share_count": 0,
             "video_description": f"video {i}"}
            for i in range(1, 46)
        ]
        self.transport = httpx.MockTransport(self.handler)

    def form(self, request):
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    def paths(self):
        return [r.url.path for r in self.requests]

    def token_body(self):
        self.issued += 1
        return {
            "access_token": f"act.{self.issued}",
            "refresh_token": f"rft.{self.issued}",
            "open_id": "open-1",
            "expires_in": 86400,
            "refresh_expires_in": 31536000,
            "scope": "user.info.basic,video.list",
            "token_type": "Bearer",
        }

    def handler(self, request):
        self.requests.append(request)
        path = request.url.path
        if path == "/v2/oauth/token/":
            if self.token_responses:
                status, body = self.token_responses.pop(0)
                return httpx.Response(status, json=body)
            return httpx.Response(200, json=self.token_body())
        if path == "/v2/oauth/revoke/":
            return httpx.Response(200, json={})
        if request.headers.get("authorization", "")[len("Bearer "):] in self.revoked:
            return httpx.Response(200, json={"error": {"code": "access_token_invalid", "message": "revoked"}})
        if self.api_responses:
            status, body = self.api_responses.pop(0)
            return httpx.Response(status, json=body)
        if path == "/v2/user/info/":
            return httpx.Response(200, json={"data": {"user": self.user}, "error": {"code": "ok"}})
        if path == "/v2/video/list/":
            payload = json.loads(request.content or b"{}")
            cursor, count = int(payload.get("cursor", 0)), int(payload.get("max_count", 20))
            page = self.videos[cursor:cursor + count]
            nxt = cursor + len(page)
            return httpx.Response(200, json={
                "data": {"videos": page, "cursor": nxt, "has_more": nxt < len(self.videos)},
                "error": {"code": "ok"},
            })
        return httpx.Response(404, json={})


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        LOG_DIR=str(tmp_path / "logs"),
        PROVIDER_API_BASE="https://provider.test",
        PROVIDER_AUTH_URL="https://provider.test/v2/auth/authorize/",
        CRON_ENABLED=False,
    )


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def vault():
    return TokenVault.from_key_string(TEST_KEY)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def oauth_client(cfg, provider):
    return ProviderOAuthClient(cfg, transport=provider.transport, retry_delay=0)


@pytest.fixture
def api_client(cfg, provider):
    return ProviderApiClient(cfg, transport=provider.transport, retry_delay=0)


@pytest.fixture
def state_manager(cfg, oauth_client):
    return OAuthStateManager("test-state-secret", oauth_client, ttl_seconds=600)


@pytest.fixture
def seed_account(session_factory, vault):
    """Insert a store with sealed tokens; returns the store code."""

    def _seed(store_code, *, status=AccountStatus.CONNECTED, expires_in=timedelta(hours=48),
              access_token="act.seed", refresh_token="rft.seed"):
        with session_factory() as s:
            s.add(StoreAccount(
                store_code=store_code,
                open_id="open-1",
                access_token_enc=vault.encrypt(access_token),
                refresh_token_enc=vault.encrypt(refresh_token),
                token_expires_at=datetime.now(timezone.utc) + expires_in,
                scopes="user.info.basic,video.list",
                status=status.value,
            ))
            s.commit()
        return store_code

    return _seed
