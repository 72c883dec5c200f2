"""
Shared logging for the whole service (Sustainability Mail Pipeline).

Features
- Context vars: service, run_id, message_id on every record
  (bound for the duration of a block with run_scope / message_scope;
  the previous value is restored on exit so nested scopes are safe)
- Styles:
    LOG_STYLE=json   -> newline-delimited JSON (default)
    LOG_STYLE=human  -> compact human-readable lines
    LOG_STYLE=both   -> emit both handlers
- Tuning:
    LOG_LEVEL=INFO|DEBUG|...
    SERVICE_NAME=sustainability-mail-pipeline (default)
- Helpers:
    human_kv(dict) to format short key=val lists (with safe truncation)
    record_kv(record) for the structured extras of a record
- Noise:
    googleapiclient logs every request URL at INFO; it is held at WARNING
"""

from __future__ import annotations

import os
import logging
import contextvars
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Iterable

from pythonjsonlogger import jsonlogger

# ----------------------------
# Context (bound per run / per message)
# ----------------------------
run_id_var     = contextvars.ContextVar("run_id", default=None)
message_id_var = contextvars.ContextVar("message_id", default=None)

@contextmanager
def run_scope(run_id: str) -> Iterator[None]:
    """Tag every record emitted inside the block with ``run_id``."""
    token = run_id_var.set(run_id)
    try:
        yield
    finally:
        run_id_var.reset(token)

@contextmanager
def message_scope(message_id: str | None) -> Iterator[None]:
    """Tag every record emitted inside the block with the mailbox message id."""
    token = message_id_var.set(message_id)
    try:
        yield
    finally:
        message_id_var.reset(token)

# ----------------------------
# Pretty key/value helper
# ----------------------------
def _short(s: Any, limit: int = 140) -> str:
    """Safely stringify & truncate for single-line logs."""
    if s is None:
        return "-"
    try:
        t = str(s)
    except Exception:
        t = repr(s)
    t = t.replace("\n", " ").replace("\r", " ").strip()
    return t if len(t) <= limit else (t[:limit] + "…")

def human_kv(items: Mapping[str, Any] | Iterable[tuple[str, Any]], sep: str = " ") -> str:
    """Render mapping/iterable as 'k=v' tokens with truncation."""
    pairs = items.items() if isinstance(items, Mapping) else items
    return sep.join(f"{k}={_short(v)}" for k, v in pairs)

def record_kv(record: logging.LogRecord) -> Mapping[str, Any]:
    """The ``extra={"kv": {...}}`` payload of a record, or an empty mapping."""
    kv = getattr(record, "kv", None)
    return kv if isinstance(kv, Mapping) else {}

# ----------------------------
# Filters & Formatters
# ----------------------------
class _CtxFilter(logging.Filter):
    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.service    = self.service
        record.run_id     = run_id_var.get()
        record.message_id = message_id_var.get()
        return True

class _HumanFormatter(logging.Formatter):
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:
        # 2025-11-23 10:36:28,047 INFO sustainability-mail-pipeline pipeline.orchestrator:
        prefix = f"{self.formatTime(record)} {record.levelname} {getattr(record, 'service', '-')}" \
                 f" {record.name}:"
        msg = str(record.getMessage())

        extras = []
        for key in ("run_id", "message_id"):
            val = getattr(record, key, None)
            if val:
                extras.append((key, val))
        extras.extend(record_kv(record).items())

        line = f"{prefix} {msg}"
        if extras:
            line += " | " + human_kv(extras)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

# ----------------------------
# Init
# ----------------------------
def init_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    service = os.getenv("SERVICE_NAME", "sustainability-mail-pipeline")
    style = os.getenv("LOG_STYLE", "json").lower()  # json | human | both

    root = logging.getLogger()
    # Avoid duplicate handlers on reloads
    if getattr(root, "_initialized_by_app", False):
        return

    root.handlers.clear()
    root.setLevel(level)

    ctx_filter = _CtxFilter(service)

    if style in ("human", "both"):
        h = logging.StreamHandler()
        h.setFormatter(_HumanFormatter())
        h.addFilter(ctx_filter)
        root.addHandler(h)

    if style in ("json", "both"):
        j = logging.StreamHandler()
        fmt = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(service)s %(name)s %(message)s %(run_id)s %(message_id)s"
        )
        j.setFormatter(fmt)
        j.addFilter(ctx_filter)
        root.addHandler(j)

    # uvicorn installs its own handlers; route them through ours
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.setLevel(level)
        lg.propagate = True

    for name in ("googleapiclient.discovery", "googleapiclient.discovery_cache"):
        logging.getLogger(name).setLevel(logging.WARNING)

    root._initialized_by_app = True  # type: ignore[attr-defined]
