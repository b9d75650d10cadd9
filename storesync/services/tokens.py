from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session

from storesync.db.models import AccountStatus, StoreAccount, as_utc
from storesync.services.crypto import TokenVault
from storesync.services.provider_oauth import TokenResult

logger = logging.getLogger(__name__)

def get_account(db: Session, store_code: str) -> Optional[StoreAccount]:
    return db.execute(
        select(StoreAccount).where(StoreAccount.store_code == store_code)
    ).scalar_one_or_none()

def upsert_tokens(
    db: Session,
    vault: TokenVault,
    *,
    store_code: str,
    tokens: TokenResult,
) -> StoreAccount:
    """Seal and store a fresh token pair; the store becomes CONNECTED."""
    access_enc = vault.encrypt(tokens.access_token)

    row = get_account(db, store_code)
    if row is None:
        row = StoreAccount(
            store_code=store_code,
            open_id=tokens.open_id,
            access_token_enc=access_enc,
            refresh_token_enc=vault.encrypt(tokens.refresh_token),
            token_expires_at=tokens.expires_at,
            refresh_token_expires_at=tokens.refresh_expires_at,
            scopes=tokens.scope,
            status=AccountStatus.CONNECTED.value,
        )
        db.add(row)
    else:
        row.access_token_enc = access_enc
        # providers may omit the refresh token on re-consent; keep the old one
        if tokens.refresh_token:
            row.refresh_token_enc = vault.encrypt(tokens.refresh_token)
            row.refresh_token_expires_at = tokens.refresh_expires_at
        row.open_id = tokens.open_id or row.open_id
        row.token_expires_at = tokens.expires_at
        row.scopes = tokens.scope or row.scopes
        row.status = AccountStatus.CONNECTED.value

    db.commit()
    db.refresh(row)
    logger.info("stored encrypted tokens", extra={"store_code": store_code})
    return row

def clear_tokens(db: Session, *, store_code: str) -> bool:
    """
    Blank the sealed tokens and mark the store DISCONNECTED.
    Keeps the row for auditability; safe to call multiple times.
    """
    row = get_account(db, store_code)
    if not row:
        return False
    row.access_token_enc = ""
    row.refresh_token_enc = ""
    row.status = AccountStatus.DISCONNECTED.value
    db.commit()
    return True

def update_account_status(db: Session, store_code: str, status: AccountStatus) -> None:
    row = get_account(db, store_code)
    if row is None:
        return
    row.status = status.value
    db.commit()
    logger.info("account status updated", extra={"store_code": store_code, "status": status.value})

def update_last_sync_time(db: Session, store_code: str) -> None:
    row = get_account(db, store_code)
    if row is None:
        return
    row.last_sync_at = datetime.now(timezone.utc)
    db.commit()

def get_connected_store_codes(db: Session) -> List[str]:
    return list(db.execute(
        select(StoreAccount.store_code)
        .where(StoreAccount.status == AccountStatus.CONNECTED.value)
        .order_by(StoreAccount.store_code)
    ).scalars())

def get_store_codes_needing_refresh(db: Session, hours_before_expiry: int = 24) -> List[str]:
    threshold = datetime.now(timezone.utc) + timedelta(hours=hours_before_expiry)
    return list(db.execute(
        select(StoreAccount.store_code)
        .where(
            StoreAccount.status == AccountStatus.CONNECTED.value,
            StoreAccount.token_expires_at < threshold,
        )
        .order_by(StoreAccount.store_code)
    ).scalars())

def get_token_info(db: Session, store_code: str) -> Optional[dict]:
    """Connection metadata without any token material."""
    row = get_account(db, store_code)
    if row is None:
        return None
    return {
        "store_code": row.store_code,
        "open_id": row.open_id,
        "status": row.status,
        "expires_at": as_utc(row.token_expires_at),
        "refresh_expires_at": as_utc(row.refresh_token_expires_at),
        "scopes": [s for s in (row.scopes or "").split(",") if s],
        "last_sync_at": as_utc(row.last_sync_at),
        "connected_at": as_utc(row.connected_at),
    }
