# storesync/core/logging.py
from __future__ import annotations

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# ---- Request-ID context ------------------------------------------------------
_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

def set_request_id(value: str) -> None:
    _request_id_ctx.set(value)

def get_request_id() -> str:
    return _request_id_ctx.get()

class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True

# ---- Credential scrubbing ----------------------------------------------------
_REDACTIONS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9._\-]+", re.I), "Bearer [REDACTED]"),
    (re.compile(r"access[_-]?token\s*[:=]\s*[^\s,&]+", re.I), "access_token=[REDACTED]"),
    (re.compile(r"refresh[_-]?token\s*[:=]\s*[^\s,&]+", re.I), "refresh_token=[REDACTED]"),
    (re.compile(r"code_verifier\s*[:=]\s*[^\s,&]+", re.I), "code_verifier=[REDACTED]"),
    (re.compile(r"client_secret\s*[:=]\s*[^\s,&]+", re.I), "client_secret=[REDACTED]"),
]

def redact(text: str) -> str:
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text

class RedactFilter(logging.Filter):
    """Last line of defence: scrub bearer tokens and grant parameters from messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = redact(message)
        if scrubbed != message:
            record.msg, record.args = scrubbed, None
        return True

# ---- JSON lines --------------------------------------------------------------
# standard LogRecord attributes; anything else on a record came in through `extra`
_SKIP = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "request_id", "message", "asctime",
}

class JsonFormatter(logging.Formatter):
    def _ts(self, record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="seconds")

    def format(self, record: logging.LogRecord) -> str:
        try:
            line = {
                "ts": self._ts(record),
                "lvl": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "request_id": getattr(record, "request_id", "-"),
                "file": record.pathname,
                "line": record.lineno,
            }
            # extras: store_code, job, counts, durations
            for k, v in record.__dict__.items():
                if k in _SKIP or k in line:
                    continue
                try:
                    json.dumps(v)
                except (TypeError, ValueError):
                    v = repr(v)
                line[k] = v
            if record.exc_info:
                line["exc"] = redact(self.formatException(record.exc_info))
            return json.dumps(line, ensure_ascii=False)
        except Exception as e:  # never crash logging
            return json.dumps({"ts": self._ts(record), "lvl": "ERROR", "logger": "logging",
                               "msg": f"formatting-error: {e!r}"}, ensure_ascii=False)

# ---- Context adapters --------------------------------------------------------
class ContextAdapter(logging.LoggerAdapter):
    """Merges the adapter's fields into each call's `extra`."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

def store_logger(store_code: str) -> ContextAdapter:
    return ContextAdapter(logging.getLogger("storesync.store"), {"store_code": store_code})

def job_logger(job_name: str) -> ContextAdapter:
    return ContextAdapter(logging.getLogger("storesync.job"), {"job": job_name})

# ---- Setup -------------------------------------------------------------------
def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(RedactFilter())
    return handler

def setup_logging(log_dir: Optional[str] = None) -> None:
    """
    JSON lines to LOG_DIR/app.log (rotated) and to the console.
    Safe to call more than once; the root handlers are replaced each time.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    directory = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    directory.mkdir(parents=True, exist_ok=True)

    formatter = JsonFormatter()
    handlers = [
        _handler(RotatingFileHandler(directory / "app.log",
                                     maxBytes=int(os.getenv("LOG_MAX_BYTES", "1048576")),
                                     backupCount=int(os.getenv("LOG_BACKUPS", "7")),
                                     encoding="utf-8"), formatter),
        _handler(logging.StreamHandler(), formatter),
    ]

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "apscheduler"):
        logging.getLogger(name).setLevel(level)
    # httpx logs full URLs at INFO, which can carry authorization codes
    logging.getLogger("httpx").setLevel("WARNING")
