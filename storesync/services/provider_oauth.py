from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from storesync.core.config import Settings, settings as default_settings
from storesync.core.errors import ConfigurationError, CredentialRevoked, OAuthProviderError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v2/oauth/token/"
REVOKE_PATH = "/v2/oauth/revoke/"

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass
class TokenResult:
    access_token: str
    refresh_token: str
    open_id: str
    expires_at: datetime
    refresh_expires_at: Optional[datetime]
    scope: str

    def __repr__(self) -> str:  # keep tokens out of logs and tracebacks
        return f"TokenResult(open_id={self.open_id!r}, expires_at={self.expires_at!r}, scope={self.scope!r})"


class ProviderOAuthClient:
    """Authorization-code + PKCE flow against the provider's OAuth endpoints."""

    def __init__(
        self,
        cfg: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ):
        self.cfg = cfg or default_settings
        self._transport = transport
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @property
    def token_url(self) -> str:
        return self.cfg.PROVIDER_API_BASE.rstrip("/") + TOKEN_PATH

    @property
    def revoke_url(self) -> str:
        return self.cfg.PROVIDER_API_BASE.rstrip("/") + REVOKE_PATH

    def ensure_configured(self) -> None:
        missing = [
            name
            for name in ("PROVIDER_CLIENT_KEY", "PROVIDER_CLIENT_SECRET", "PROVIDER_REDIRECT_URI")
            if not getattr(self.cfg, name)
        ]
        if missing:
            raise ConfigurationError(f"Missing {', '.join(missing)} in environment")

    def build_authorization_url(self, state: str, code_challenge: str, scopes: List[str] | None = None) -> str:
        self.ensure_configured()
        params = {
            "client_key": self.cfg.PROVIDER_CLIENT_KEY,
            "scope": ",".join(scopes or self.cfg.PROVIDER_SCOPES),
            "response_type": "code",
            "redirect_uri": self.cfg.PROVIDER_REDIRECT_URI,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.cfg.PROVIDER_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: str) -> TokenResult:
        """
        Exchange an authorization code for tokens.
        Returns a TokenResult with absolute expiry timestamps.
        """
        self.ensure_configured()
        data = {
            "client_key": self.cfg.PROVIDER_CLIENT_KEY,
            "client_secret": self.cfg.PROVIDER_CLIENT_SECRET,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.cfg.PROVIDER_REDIRECT_URI,
            "code_verifier": code_verifier,
        }
        resp = await self._post_token(data, "exchange_code")
        if resp.status_code != 200:
            logger.error("token exchange failed", extra={"status": resp.status_code})
            raise OAuthProviderError(f"token exchange failed: {resp.status_code}")
        return self._parse_token_response(resp)

    async def refresh_token(self, refresh_token: str) -> TokenResult:
        """Use refresh_token to get a fresh pair. 400/401 means the grant is gone."""
        self.ensure_configured()
        if not refresh_token:
            raise ValueError("refresh_token required")

        data = {
            "client_key": self.cfg.PROVIDER_CLIENT_KEY,
            "client_secret": self.cfg.PROVIDER_CLIENT_SECRET,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        resp = await self._post_token(data, "refresh_token")
        if resp.status_code in (400, 401):
            raise CredentialRevoked("Token refresh failed - token may be revoked")
        if resp.status_code != 200:
            raise OAuthProviderError(f"refresh failed: {resp.status_code}", code="REFRESH_FAILED")
        return self._parse_token_response(resp)

    async def revoke_token(self, token: str) -> bool:
        data = {
            "client_key": self.cfg.PROVIDER_CLIENT_KEY,
            "client_secret": self.cfg.PROVIDER_CLIENT_SECRET,
            "token": token,
        }
        try:
            async with self._client(timeout=10.0) as client:
                r = await client.post(self.revoke_url, data=data)
        except httpx.HTTPError as e:
            logger.warning("token revocation failed", extra={"error": type(e).__name__})
            return False
        if r.status_code != 200:
            logger.warning("token revocation returned non-OK status", extra={"status": r.status_code})
            return False
        return True

    # ---- internals ----------------------------------------------------------

    def _client(self, timeout: float = 15.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _post_token(self, data: Dict[str, str], op: str) -> httpx.Response:
        attempt = 0
        while True:
            try:
                async with self._client() as client:
                    resp = await client.post(
                        self.token_url,
                        data=data,
                        headers={"Content-Type": "application/x-www-form-urlencoded"},
                    )
                if resp.status_code not in RETRYABLE_STATUS or attempt >= self.max_retries:
                    return resp
                reason = f"status {resp.status_code}"
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise OAuthProviderError(f"{op} failed: provider unreachable") from e
                reason = type(e).__name__
            delay = self.retry_delay * (2 ** attempt)
            logger.warning(f"{op} retry {attempt + 1}/{self.max_retries} in {delay:.1f}s ({reason})")
            await asyncio.sleep(delay)
            attempt += 1

    @staticmethod
    def _parse_token_response(resp: httpx.Response) -> TokenResult:
        j: Dict[str, Any] = resp.json()
        if not j.get("access_token"):
            raise OAuthProviderError(
                f"no access_token in response: {j.get('error', 'unknown_error')}",
            )
        now = datetime.now(timezone.utc)
        expires_in = int(j.get("expires_in", 0) or 0)
        refresh_expires_in = j.get("refresh_expires_in")
        return TokenResult(
            access_token=j["access_token"],
            refresh_token=j.get("refresh_token") or "",
            open_id=j.get("open_id") or "",
            expires_at=now + timedelta(seconds=expires_in),
            refresh_expires_at=(
                now + timedelta(seconds=int(refresh_expires_in)) if refresh_expires_in else None
            ),
            scope=j.get("scope") or "",
        )
