"""
Sustainability Mail Pipeline API
================================

This FastAPI application wraps the sustainability mail pipeline: it
reads unprocessed invoice mails from a Google Workspace mailbox, lets
SAP AI Core classify them and extract a 16-column record, appends new
records to a Google Sheet and starts an SAP Build Process Automation
workflow for each of them.  It exposes the following endpoints:

* ``GET /`` – Health check returning a simple confirmation string.
* ``GET /health`` – Returns configuration and tuning values for the
  service and whether a run is in progress (never secrets).
* ``POST /run`` – Execute one pipeline run.  Called by the scheduler.
  A run that fails is reported to the operator by mail and surfaces
  here as HTTP 500.
* ``POST /callback`` – Completion callback from the workflow.  A failed
  workflow deletes the stored row so the invoice can be re-processed.
  Always answers 200 with ``{message, timestamp}``.
* ``POST /classify`` / ``POST /extract`` – Run the classification (and
  extraction + normalisation) on an arbitrary payload without touching
  the sheet or the workflow.  Useful for testing prompts.
* ``GET /dashboard/...`` – Aggregations over the sheet for the
  dashboard (summary, monthly series, spend by category, amounts,
  years).
* ``GET /reports/{year}`` – Annual ESG report data with narratives.

Logging is structured.  The root logger is configured via
``logging_setup.init_logging``; every record emitted during a pipeline
run carries the run id and the id of the message being processed.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from starlette.concurrency import run_in_threadpool

from logging_setup import init_logging
from pipeline import config
from pipeline.callback import handle_completion
from pipeline.classifier import classify_email
from pipeline.extractor import extract_fields
from pipeline.llm_client import AICoreClient
from pipeline.mailbox import GmailMailbox, Mailbox
from pipeline.models import (
    NOT_RELEVANT,
    CallbackOut,
    CategorySpend,
    DashboardSummary,
    EmailPayload,
    EsgReport,
    ExtractOut,
    MonthlyPoint,
)
from pipeline.narratives import build_esg_report
from pipeline.normalizer import normalize
from pipeline.orchestrator import MailPipeline
from pipeline.reporting import (
    available_years,
    dashboard_summary,
    invoice_amounts,
    monthly_time_series,
    spend_by_category,
)
from pipeline.run_lock import is_running
from pipeline.store import GoogleSheetStore, TabularStore
from pipeline.workflow import WorkflowTrigger

# Initialise logging at import time so every module shares the same
# handlers and format.
init_logging()
log = logging.getLogger("main")

app = FastAPI(title="Sustainability Mail Pipeline API")


# ---------------------------------------------------------------------------
# Collaborators (overridable in tests via app.dependency_overrides)
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_store() -> TabularStore:
    return GoogleSheetStore()


@lru_cache(maxsize=1)
def get_mailbox() -> Mailbox:
    return GmailMailbox()


@lru_cache(maxsize=1)
def get_llm() -> AICoreClient:
    return AICoreClient()


@lru_cache(maxsize=1)
def get_workflow() -> WorkflowTrigger:
    return WorkflowTrigger()


def get_pipeline(
    mailbox: Mailbox = Depends(get_mailbox),
    store: TabularStore = Depends(get_store),
    llm: AICoreClient = Depends(get_llm),
    workflow: WorkflowTrigger = Depends(get_workflow),
) -> MailPipeline:
    return MailPipeline(mailbox=mailbox, store=store, llm=llm, workflow=workflow)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Root and health endpoints
# ---------------------------------------------------------------------------
@app.get("/")
def root() -> Dict[str, str]:
    """Basic health check for service availability."""
    return {"message": "Sustainability Mail Pipeline is running"}


@app.get("/health")
def health() -> Dict[str, Any]:
    """Detailed health endpoint exposing configuration values."""
    return {
        "ok": True,
        "run_in_progress": is_running(),
        "label": config.PROCESSED_LABEL_NAME,
        "mail_since_days": config.MAIL_SINCE_DAYS,
        "max_threads_per_run": config.MAX_THREADS_PER_RUN,
        "timezone": config.PIPELINE_TIMEZONE,
        "model": {"name": config.AIC_MODEL_NAME, "version": config.AIC_MODEL_VERSION},
        "workflow_enabled": config.WORKFLOW_ENABLED,
        "slow_ms": {"llm": config.SLOW_LLM_MS, "store": config.SLOW_STORE_MS},
        "configured": {
            "ai_core": bool(config.AIC_API_URL and config.AIC_TOKEN_URL and config.AIC_DEPLOYMENT_ID),
            "workflow": bool(config.SPA_API_URL and config.SPA_TOKEN_URL and config.SPA_DEFINITION_ID),
            "sheet": bool(config.SHEET_ID),
            "mailbox": bool(config.GOOGLE_DELEGATED_USER),
            "log_email": bool(config.LOG_EMAIL),
        },
    }


# ---------------------------------------------------------------------------
# Pipeline run
# ---------------------------------------------------------------------------
@app.post("/run")
def run_pipeline(pipeline: MailPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Process unprocessed inbox threads once.

    1. Take the run lock; if another run holds it, return immediately
       with ``skipped_locked``.
    2. Find inbox threads newer than ``MAIL_SINCE_DAYS`` without the
       processed label.
    3. Classify, extract, normalise, dedup, append and trigger per
       message; label each thread once its messages are done.

    The response summarises the per-message outcomes and includes the
    run's log transcript.
    """
    t0 = time.perf_counter()
    try:
        result = pipeline.run_once()
    except Exception as e:
        # Already logged and mailed by the orchestrator.
        raise HTTPException(status_code=500, detail=f"Pipeline run failed: {e}")
    elapsed_ms = int((time.perf_counter() - t0) * 1000)
    log.info("run_endpoint_complete", extra={"kv": {
        "run_id": result.run_id or "-",
        "skipped_locked": result.skipped_locked,
        "elapsed_ms": elapsed_ms,
    }})
    return {
        "ok": not result.skipped_locked,
        "run_id": result.run_id,
        "skipped_locked": result.skipped_locked,
        "threads_found": result.threads_found,
        "threads_labeled": result.threads_labeled,
        "counts": result.counts(),
        "details": [o.as_dict() for o in result.outcomes],
        "elapsed_ms": elapsed_ms,
        "log": result.log_lines,
    }


# ---------------------------------------------------------------------------
# Workflow completion callback
# ---------------------------------------------------------------------------
@app.post("/callback", response_model=CallbackOut)
async def completion_callback(request: Request, store: TabularStore = Depends(get_store)) -> CallbackOut:
    """Apply a workflow completion report to the sheet.

    Errors are narrated in ``message``; the status code is always 200 so
    the caller never has to branch on it.
    """
    payload: Optional[Any] = None
    raw = await request.body()
    if raw:
        try:
            payload = json.loads(raw)
        except ValueError:
            log.warning("callback_invalid_json", extra={"kv": {"raw": raw[:200].decode("utf-8", "replace")}})
    message = await run_in_threadpool(handle_completion, store, payload)
    log.info("callback_complete", extra={"kv": {"message": message}})
    return CallbackOut(message=message, timestamp=_now_iso())


# ---------------------------------------------------------------------------
# In-process classification / extraction endpoints
# ---------------------------------------------------------------------------
@app.post("/classify", response_model=ExtractOut)
def classify_local(payload: EmailPayload, llm: AICoreClient = Depends(get_llm)) -> ExtractOut:
    """Classify a payload with the production prompt; nothing is stored."""
    category = classify_email(llm, payload)
    log.info("classify_endpoint_complete", extra={"kv": {"class": category}})
    return ExtractOut(ok=True, data={"class": category})


@app.post("/extract", response_model=ExtractOut)
def extract_local(payload: EmailPayload, llm: AICoreClient = Depends(get_llm)) -> ExtractOut:
    """Classify, extract and normalise a payload; nothing is stored or triggered.

    Irrelevant mails stop after classification, exactly like a pipeline
    run would.
    """
    t0 = time.perf_counter()
    category = classify_email(llm, payload)
    if category == NOT_RELEVANT:
        return ExtractOut(ok=True, data={"class": category})

    extracted = extract_fields(llm, category, payload)
    record = normalize(extracted, category, payload)
    extract_ms = int((time.perf_counter() - t0) * 1000)
    if extract_ms > config.SLOW_LLM_MS:
        log.warning("slow_llm_extract", extra={"kv": {"elapsed_ms": extract_ms}})
    log.info("extract_endpoint_complete", extra={"kv": {"class": category, "elapsed_ms": extract_ms}})
    return ExtractOut(ok=True, data={"class": category, "extracted": extracted, "record": record.to_context()})


# ---------------------------------------------------------------------------
# Dashboard and reports
# ---------------------------------------------------------------------------
def _rows(store: TabularStore) -> List[List[Any]]:
    return store.get_all_rows()


def _bad_range(e: ValueError) -> HTTPException:
    return HTTPException(status_code=422, detail=str(e))


@app.get("/dashboard/summary", response_model=DashboardSummary)
def dashboard_summary_endpoint(
    start: Optional[str] = Query(None, description="Inclusive ISO start date"),
    end: Optional[str] = Query(None, description="Inclusive ISO end date"),
    store: TabularStore = Depends(get_store),
) -> DashboardSummary:
    try:
        return dashboard_summary(_rows(store), start, end)
    except ValueError as e:
        raise _bad_range(e)


@app.get("/dashboard/monthly", response_model=List[MonthlyPoint])
def dashboard_monthly_endpoint(
    start: Optional[str] = None,
    end: Optional[str] = None,
    store: TabularStore = Depends(get_store),
) -> List[MonthlyPoint]:
    try:
        return monthly_time_series(_rows(store), start, end)
    except ValueError as e:
        raise _bad_range(e)


@app.get("/dashboard/categories", response_model=List[CategorySpend])
def dashboard_categories_endpoint(
    start: Optional[str] = None,
    end: Optional[str] = None,
    store: TabularStore = Depends(get_store),
) -> List[CategorySpend]:
    try:
        return spend_by_category(_rows(store), start, end)
    except ValueError as e:
        raise _bad_range(e)


@app.get("/dashboard/amounts", response_model=List[float])
def dashboard_amounts_endpoint(
    start: Optional[str] = None,
    end: Optional[str] = None,
    store: TabularStore = Depends(get_store),
) -> List[float]:
    try:
        return invoice_amounts(_rows(store), start, end)
    except ValueError as e:
        raise _bad_range(e)


@app.get("/dashboard/years", response_model=List[int])
def dashboard_years_endpoint(store: TabularStore = Depends(get_store)) -> List[int]:
    return available_years(_rows(store))


@app.get("/reports/{year}", response_model=EsgReport)
def esg_report_endpoint(
    year: int,
    store: TabularStore = Depends(get_store),
    llm: AICoreClient = Depends(get_llm),
) -> EsgReport:
    """Report data for one calendar year, including the four narratives."""
    report = build_esg_report(store, llm, year)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No data for year {year}")
    return report
