from __future__ import annotations
import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from storesync.core.errors import ConfigurationError, StateInvalidOrExpired
from storesync.db.models import OAuthState, as_utc
from storesync.services.provider_oauth import ProviderOAuthClient, TokenResult

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 16  # hex chars; keeps the state short in URLs


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str


def _b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(32))


def code_challenge_for(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def _short(state: str) -> str:
    return state[:20] + "..."


class OAuthStateManager:
    """
    Signed, single-use OAuth state with a PKCE verifier stored server side.

    State format: ``{store_code}_{nonce}_{signature}`` where the signature is a
    truncated HMAC-SHA256 over ``"{store_code}:{nonce}"``.
    """

    def __init__(self, secret: str, client: ProviderOAuthClient, ttl_seconds: int = 600):
        if not secret:
            raise ConfigurationError("STATE_SECRET or TOKEN_ENC_KEY is required for OAuth state validation")
        self._key = secret.encode("utf-8")
        self.client = client
        self.ttl = timedelta(seconds=max(30, int(ttl_seconds)))

    def _sign(self, store_code: str, nonce: str) -> str:
        msg = f"{store_code}:{nonce}".encode("utf-8")
        return hmac.new(self._key, msg, hashlib.sha256).hexdigest()[:SIGNATURE_LENGTH]

    def issue(self, db: Session, store_code: str) -> AuthorizationRequest:
        if not store_code or "_" in store_code:
            raise ValueError("store_code must be non-empty and must not contain '_'")

        nonce = secrets.token_hex(8)
        state = f"{store_code}_{nonce}_{self._sign(store_code, nonce)}"

        verifier = generate_code_verifier()
        url = self.client.build_authorization_url(state, code_challenge_for(verifier))

        now = datetime.now(timezone.utc)
        db.add(OAuthState(
            state=state,
            store_code=store_code,
            code_verifier=verifier,
            created_at=now,
            expires_at=now + self.ttl,
        ))
        db.commit()

        logger.info("issued authorization url", extra={"store_code": store_code, "state": _short(state)})
        return AuthorizationRequest(authorization_url=url, state=state)

    def validate(self, state: str) -> Optional[str]:
        """Signature/format check only. Returns the store code or None."""
        parts = (state or "").split("_")
        if len(parts) != 3:
            logger.warning("invalid state format", extra={"state": _short(state or "")})
            return None

        store_code, nonce, signature = parts
        if not store_code or not nonce or not signature:
            return None

        if not hmac.compare_digest(signature, self._sign(store_code, nonce)):
            logger.warning("state signature verification failed", extra={"store_code": store_code})
            return None
        return store_code

    def consume(self, db: Session, state: str) -> OAuthState:
        """
        Delete the stored record and hand it back. The DELETE row count decides
        the winner when the same state is replayed concurrently.
        """
        self.purge_expired(db)

        record = db.get(OAuthState, state)
        if record is None:
            raise StateInvalidOrExpired("Invalid or expired OAuth state")

        expired = as_utc(record.expires_at) <= datetime.now(timezone.utc)
        verifier, store_code = record.code_verifier, record.store_code
        expires_at = record.expires_at

        result = db.execute(
            delete(OAuthState).where(OAuthState.state == state).execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1 or expired:
            raise StateInvalidOrExpired("Invalid or expired OAuth state")

        return OAuthState(state=state, store_code=store_code, code_verifier=verifier, expires_at=expires_at)

    async def exchange(self, db: Session, code: str, state: str) -> TokenResult:
        store_code = self.validate(state)
        if store_code is None:
            raise StateInvalidOrExpired("Invalid OAuth state signature")

        record = self.consume(db, state)
        if record.store_code != store_code:
            raise StateInvalidOrExpired("OAuth state does not match store")

        logger.info("exchanging authorization code", extra={"store_code": store_code, "state": _short(state)})
        return await self.client.exchange_code(code, record.code_verifier)

    def purge_expired(self, db: Session) -> int:
        result = db.execute(
            delete(OAuthState)
            .where(OAuthState.expires_at < datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            logger.debug(f"purged {result.rowcount} expired oauth states")
        return result.rowcount or 0
