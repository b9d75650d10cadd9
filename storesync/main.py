import logging
import time
import uuid
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.middleware.base import BaseHTTPMiddleware

from storesync.core.config import Settings, settings as default_settings
from storesync.core.errors import RateLimited, StoreSyncError, VaultError
from storesync.core.logging import set_request_id, setup_logging
from storesync.db.models import Base
from storesync.db.session import make_engine, make_session_factory
from storesync.routers import auth as auth_router
from storesync.routers import health
from storesync.routers import sync as sync_router
from storesync.security.ratelimit import build_rate_limiters, purge_rate_limiters
from storesync.services.crypto import TokenVault, get_vault
from storesync.services.provider_api import ProviderApiClient
from storesync.services.provider_oauth import ProviderOAuthClient
from storesync.services.state import OAuthStateManager
from storesync.services.sync import SyncContext, build_jobs
from storesync.sync.audit import SyncLogRecorder
from storesync.sync.batch import BatchProcessor
from storesync.sync.locks import StoreLockManager
from storesync.sync.orchestrator import SyncOrchestrator
from storesync.sync.scheduler import SyncScheduler

logger = logging.getLogger("storesync.main")

class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        set_request_id(rid)
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = int((time.perf_counter() - start) * 1000)
        client = request.client.host if request.client else "-"
        logging.getLogger("storesync.request").info(
            f"{client} {request.method} {request.url.path} {response.status_code} {dur_ms}ms",
            extra={"method": request.method, "path": str(request.url.path), "status": response.status_code, "dur_ms": dur_ms},
        )
        response.headers["X-Request-ID"] = rid
        return response

async def store_sync_error_handler(request: Request, exc: StoreSyncError):
    message = exc.message
    if isinstance(exc, VaultError):
        # never say whether the key or the ciphertext was at fault
        message = "Stored credentials are unavailable; reconnect required"
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {message}", extra={"path": str(request.url.path)})
    headers = None
    if isinstance(exc, RateLimited):
        headers = {**exc.headers, "Retry-After": str(exc.retry_after)}
    return JSONResponse(
        {"error": {"code": exc.code, "message": message}},
        status_code=exc.status_code,
        headers=headers,
    )

def create_app(
    cfg: Optional[Settings] = None,
    *,
    engine: Optional[Engine] = None,
    vault: Optional[TokenVault] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Composition root: every shared object (limiters, lock table, audit buffer,
    clients) is built here once and hung off app.state.
    """
    cfg = cfg or default_settings
    setup_logging(cfg.LOG_DIR)

    # fail fast on a missing or malformed TOKEN_ENC_KEY
    vault = vault or get_vault(cfg.TOKEN_ENC_KEY)

    engine = engine or make_engine(cfg.DATABASE_URL or None)
    session_factory = make_session_factory(engine)

    oauth_client = ProviderOAuthClient(cfg, transport=transport)
    api_client = ProviderApiClient(cfg, transport=transport)
    state_manager = OAuthStateManager(cfg.state_secret, oauth_client, ttl_seconds=cfg.OAUTH_STATE_TTL_SECONDS)

    orchestrator = SyncOrchestrator(
        session_factory,
        StoreLockManager(),
        BatchProcessor(cfg.SYNC_CONCURRENCY),
        SyncLogRecorder(session_factory),
        concurrency=cfg.SYNC_CONCURRENCY,
    )
    jobs = build_jobs(SyncContext(session_factory, vault, oauth_client, api_client, cfg))
    rate_limiters = build_rate_limiters(cfg, clock)

    def cleanup() -> None:
        purge_rate_limiters(rate_limiters)
        with session_factory() as db:
            state_manager.purge_expired(db)

    app = FastAPI(title="Store Sync Service", version="1.0")
    app.state.settings = cfg
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.vault = vault
    app.state.oauth_client = oauth_client
    app.state.api_client = api_client
    app.state.state_manager = state_manager
    app.state.rate_limiters = rate_limiters
    app.state.orchestrator = orchestrator
    app.state.jobs = jobs
    app.state.scheduler = SyncScheduler(cfg, orchestrator, jobs, cleanup=cleanup)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(StoreSyncError, store_sync_error_handler)

    app.include_router(health.router)
    app.include_router(auth_router.router)
    app.include_router(sync_router.router)

    @app.on_event("startup")
    async def on_startup():
        Base.metadata.create_all(bind=engine)
        app.state.scheduler.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        app.state.scheduler.shutdown()
        # anything still buffered from an interrupted run
        orchestrator.recorder.flush()

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storesync.main:app", host="0.0.0.0", port=8000, reload=True)
