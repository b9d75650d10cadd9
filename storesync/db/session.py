from __future__ import annotations
from pathlib import Path
from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from storesync.core.config import settings

BASE_DIR = Path(__file__).resolve().parents[2]  # repo root
DATA_DIR = BASE_DIR / "data"

Base = declarative_base()

def _default_url() -> str:
    DATA_DIR.mkdir(exist_ok=True)
    return f"sqlite:///{DATA_DIR / 'app.sqlite3'}"

def make_engine(url: str | None = None) -> Engine:
    url = url or settings.DATABASE_URL or _default_url()
    if url.startswith("sqlite"):
        # check_same_thread=False required for SQLite + threadpool route handlers
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)

def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)

def get_db(request: Request):
    # the factory is chosen by create_app, so tests can swap the engine
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
