from __future__ import annotations
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from storesync.core.errors import OAuthProviderError, TokenNotFound, VaultError
from storesync.db.session import get_db
from storesync.security.internal import require_internal
from storesync.security.ratelimit import limit_admin, limit_by_ip, limit_oauth, limit_strict
from storesync.services.state import OAuthStateManager
from storesync.services.tokens import clear_tokens, get_account, get_token_info, upsert_tokens

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/provider", tags=["provider-oauth"], dependencies=[Depends(limit_by_ip)])

# "_" separates the parts of the OAuth state, so it cannot appear in a code
STORE_CODE_PATTERN = r"^[A-Za-z0-9-]{1,50}$"

def _state_manager(request: Request) -> OAuthStateManager:
    return request.app.state.state_manager

class AuthURLResp(BaseModel):
    auth_url: str
    state: str

class ConnectResp(BaseModel):
    connected: bool
    store_code: str
    scopes: List[str] = []

@router.get(
    "/url",
    response_model=AuthURLResp,
    summary="Generate the provider consent URL for a store",
    dependencies=[Depends(limit_oauth)],
)
def auth_url(
    request: Request,
    store_code: str = Query(..., pattern=STORE_CODE_PATTERN),
    redirect: bool = Query(False, description="302 to the consent page instead of returning JSON"),
    db: Session = Depends(get_db),
):
    auth = _state_manager(request).issue(db, store_code)
    if redirect:
        return RedirectResponse(auth.authorization_url, status_code=302)
    return {"auth_url": auth.authorization_url, "state": auth.state}

@router.get(
    "/callback",
    response_model=ConnectResp,
    summary="OAuth callback to exchange the code and store sealed tokens",
    dependencies=[Depends(limit_oauth), Depends(limit_strict)],
)
async def auth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    scopes: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    if error:
        logger.warning("provider returned authorization error", extra={"error": error})
        raise OAuthProviderError(f"authorization denied: {error_description or error}", code="AUTH_DENIED")
    if not code or not state:
        raise OAuthProviderError("missing code or state", code="INVALID_CALLBACK")

    manager = _state_manager(request)
    store_code = manager.validate(state)
    tokens = await manager.exchange(db, code, state)
    if scopes and not tokens.scope:
        tokens.scope = scopes

    row = upsert_tokens(db, request.app.state.vault, store_code=store_code, tokens=tokens)
    logger.info("store connected", extra={"store_code": store_code})
    return ConnectResp(
        connected=True,
        store_code=row.store_code,
        scopes=[s for s in (row.scopes or "").split(",") if s],
    )

class DisconnectReq(BaseModel):
    store_code: str = Field(..., pattern=STORE_CODE_PATTERN)

class DisconnectResp(BaseModel):
    disconnected: bool
    existed: bool
    revoked: bool

@router.post(
    "/disconnect",
    response_model=DisconnectResp,
    summary="Revoke a store's tokens at the provider and clear local storage (idempotent)",
    dependencies=[Depends(require_internal), Depends(limit_admin)],
)
async def disconnect(payload: DisconnectReq, request: Request, db: Session = Depends(get_db)):
    row = get_account(db, payload.store_code)
    if not row:
        return DisconnectResp(disconnected=True, existed=False, revoked=False)

    # prefer revoking the access token; the grant goes with it
    revoked = False
    sealed = row.access_token_enc or row.refresh_token_enc
    if sealed:
        try:
            token = request.app.state.vault.decrypt(sealed)
        except VaultError:
            logger.warning("stored token unreadable; clearing without revoke",
                           extra={"store_code": payload.store_code})
        else:
            revoked = await request.app.state.oauth_client.revoke_token(token)

    clear_tokens(db, store_code=payload.store_code)
    logger.info("store disconnected", extra={"store_code": payload.store_code, "revoked": revoked})
    return DisconnectResp(disconnected=True, existed=True, revoked=revoked)

class StatusResp(BaseModel):
    store_code: str
    open_id: str
    status: str
    expires_at: datetime | None = None
    refresh_expires_at: datetime | None = None
    scopes: List[str] = []
    last_sync_at: datetime | None = None
    connected_at: datetime | None = None

@router.get(
    "/status/{store_code}",
    response_model=StatusResp,
    summary="Connection metadata for a store (never returns tokens)",
    dependencies=[Depends(require_internal), Depends(limit_admin)],
)
def connection_status(store_code: str = Path(..., pattern=STORE_CODE_PATTERN), db: Session = Depends(get_db)):
    info = get_token_info(db, store_code)
    if info is None:
        raise TokenNotFound("store has never connected")
    return info
