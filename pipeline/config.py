"""
pipeline/config.py
------------------
Environment driven configuration for the sustainability mail pipeline.

Every value is read once at import time (after ``load_dotenv()``) so a
``.env`` file in the working directory is honoured during local runs.
Secrets have no defaults; the clients that need them fail closed when
they are missing.
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_timeout(name: str) -> Optional[float]:
    """Unset or "0" disables the client-side timeout."""
    raw = os.getenv(name)
    if not raw or raw == "0":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


# =========================
# SAP AI Core (classification / extraction / narratives)
# =========================
AIC_API_URL        = (os.getenv("AIC_API_URL") or "").rstrip("/")
AIC_TOKEN_URL      = os.getenv("AIC_TOKEN_URL") or ""
AIC_CLIENT_ID      = os.getenv("AIC_CLIENT_ID") or ""
AIC_CLIENT_SECRET  = os.getenv("AIC_CLIENT_SECRET") or ""
AIC_RESOURCE_GROUP = os.getenv("AIC_RESOURCE_GROUP", "default")
AIC_DEPLOYMENT_ID  = os.getenv("AIC_DEPLOYMENT_ID") or ""
AIC_MODEL_NAME     = os.getenv("AIC_MODEL_NAME", "gemini-2.5-pro")
AIC_MODEL_VERSION  = os.getenv("AIC_MODEL_VERSION", "latest")

LLM_TIMEOUT_SEC = _get_timeout("LLM_TIMEOUT_SEC")
LLM_MAX_RETRIES = _get_int("LLM_MAX_RETRIES", 0)

# =========================
# SAP Build Process Automation (workflow trigger)
# =========================
SPA_API_URL       = (os.getenv("SPA_API_URL") or "").rstrip("/")
SPA_TOKEN_URL     = os.getenv("SPA_TOKEN_URL") or ""
SPA_CLIENT_ID     = os.getenv("SPA_CLIENT_ID") or ""
SPA_CLIENT_SECRET = os.getenv("SPA_CLIENT_SECRET") or ""
SPA_API_KEY       = os.getenv("SPA_API_KEY") or ""
SPA_ENV           = os.getenv("SPA_ENV") or ""
SPA_DEFINITION_ID = os.getenv("SPA_DEFINITION_ID") or ""
WORKFLOW_ENABLED  = _get_bool("WORKFLOW_ENABLED", True)
WORKFLOW_TIMEOUT_SEC = _get_timeout("WORKFLOW_TIMEOUT_SEC")

# =========================
# Google Workspace (mailbox + sheet)
# =========================
GOOGLE_SERVICE_ACCOUNT_JSON = os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON") or ""
GOOGLE_DELEGATED_USER       = os.getenv("GOOGLE_DELEGATED_USER") or ""
SHEET_ID                    = os.getenv("SHEET_ID") or ""
SHEET_NAME                  = os.getenv("SHEET_NAME") or ""   # empty -> first sheet

PROCESSED_LABEL_NAME = os.getenv("PROCESSED_LABEL_NAME", "SAP_SUSTAINABILITY_PROCESSED")
MAIL_SINCE_DAYS      = _get_int("MAIL_SINCE_DAYS", 7)
MAX_THREADS_PER_RUN  = _get_int("MAX_THREADS_PER_RUN", 50)
LOG_EMAIL            = os.getenv("LOG_EMAIL") or ""

# =========================
# Misc tuning
# =========================
PIPELINE_TIMEZONE   = os.getenv("PIPELINE_TIMEZONE", "Europe/Berlin")
TOKEN_CACHE_SECONDS = _get_int("TOKEN_CACHE_SECONDS", 300)
SLOW_LLM_MS         = _get_int("SLOW_LLM_MS", 8000)
SLOW_STORE_MS       = _get_int("SLOW_STORE_MS", 3000)
