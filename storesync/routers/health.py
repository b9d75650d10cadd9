from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from storesync.security.ratelimit import limit_by_ip

router = APIRouter(tags=["health"], dependencies=[Depends(limit_by_ip)])

@router.get("/healthz", summary="Liveness probe with a vault round-trip")
def healthz(request: Request):
    vault_ok = request.app.state.vault.self_check()
    body = {"ok": vault_ok, "vault": "ok" if vault_ok else "failed"}
    return body if vault_ok else JSONResponse(body, status_code=503)
