from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from sqlalchemy.orm import Session

from storesync.core.errors import TokenNotFound
from storesync.db.models import AccountStatus, as_utc
from storesync.services.crypto import TokenVault
from storesync.services.provider_oauth import ProviderOAuthClient
from storesync.services.tokens import get_account, upsert_tokens

logger = logging.getLogger(__name__)

REFRESH_SKEW = timedelta(minutes=5)

def _now() -> datetime:
    return datetime.now(timezone.utc)

async def refresh_store_token(
    db: Session, vault: TokenVault, client: ProviderOAuthClient, *, store_code: str
) -> str:
    """
    Decrypt the refresh token, rotate the pair at the provider and seal the new
    tokens. Returns the new access token. CredentialRevoked propagates.
    """
    row = get_account(db, store_code)
    if row is None or row.status != AccountStatus.CONNECTED.value:
        raise TokenNotFound("no connected account for store")

    refresh_token = vault.decrypt(row.refresh_token_enc)
    new = await client.refresh_token(refresh_token)
    if not new.refresh_token:
        new.refresh_token = refresh_token

    upsert_tokens(db, vault, store_code=store_code, tokens=new)
    logger.info("tokens refreshed", extra={"store_code": store_code})
    return new.access_token

async def ensure_access_token(
    db: Session, vault: TokenVault, client: ProviderOAuthClient, *, store_code: str
) -> str:
    """
    Returns a usable access token for the store, refreshing it when it expires
    within REFRESH_SKEW.
    """
    row = get_account(db, store_code)
    if row is None:
        raise TokenNotFound("no token record for store")
    if row.status != AccountStatus.CONNECTED.value:
        raise TokenNotFound(f"store is {row.status}; reconnect required")

    if as_utc(row.token_expires_at) - REFRESH_SKEW > _now():
        return vault.decrypt(row.access_token_enc)

    logger.info("access token expiring, refreshing", extra={"store_code": store_code})
    return await refresh_store_token(db, vault, client, store_code=store_code)
