"""
Pipeline orchestrator
=====================

One run walks the unprocessed inbox threads and drives each message
through the per-message state machine::

    CLASSIFIED -> [SKIPPED_IRRELEVANT]
               |  EXTRACTED -> NORMALIZED -> [SKIPPED_DUPLICATE]
                                           |  PERSISTED -> TRIGGERED / TRIGGER_FAILED

The remote clients never raise, so a message normally reaches a terminal
state without an exception.  A thread is labelled as processed only
after all of its messages have been handled.

Anything that does escape (a store or mailbox error, a bug) aborts the
run loop.  It is logged, mailed to the operator together with the run's
log transcript and then re-raised so the caller sees a failed run.
Rows already appended and workflows already started stay as they are;
the thread that was being processed keeps no label and is picked up
again on the next run, where dedup turns the replay into a no-op.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from logging_setup import message_scope, run_scope
from pipeline import config
from pipeline.classifier import classify_email
from pipeline.dedup import persist_if_new
from pipeline.extractor import extract_fields
from pipeline.llm_client import AICoreClient
from pipeline.mailbox import (
    Mailbox,
    MailMessage,
    MailThread,
    build_email_payload,
    processed_query,
    thread_has_label,
)
from pipeline.models import NOT_RELEVANT, CanonicalRecord, EmailPayload, TriggerResult
from pipeline.normalizer import normalize
from pipeline.notifier import FailureNotifier
from pipeline.run_lock import RUN_LOCK, try_run_lock
from pipeline.run_log import RunLog
from pipeline.store import TabularStore
from pipeline.workflow import WorkflowTrigger

log = logging.getLogger("pipeline.orchestrator")


class MessageState(str, Enum):
    SKIPPED_IRRELEVANT = "skipped_irrelevant"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    TRIGGERED = "triggered"
    TRIGGER_FAILED = "trigger_failed"


@dataclass
class MessageOutcome:
    state: MessageState
    category: str
    message_id: str = ""
    record: Optional[CanonicalRecord] = None
    trigger: Optional[TriggerResult] = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "message_id": self.message_id,
            "state": self.state.value,
            "category": self.category,
            "invoice_nb": self.record.invoice_nb if self.record else None,
            "trigger_reason": self.trigger.reason.value if self.trigger else None,
        }


@dataclass
class RunResult:
    run_id: str = ""
    skipped_locked: bool = False
    threads_found: int = 0
    threads_labeled: int = 0
    outcomes: List[MessageOutcome] = field(default_factory=list)
    log_lines: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in MessageState}
        for o in self.outcomes:
            out[o.state.value] += 1
        return out


class MailPipeline:
    def __init__(
        self,
        mailbox: Mailbox,
        store: TabularStore,
        llm: AICoreClient,
        workflow: WorkflowTrigger,
        notifier: Optional[FailureNotifier] = None,
        label_name: str = config.PROCESSED_LABEL_NAME,
        since_days: int = config.MAIL_SINCE_DAYS,
        max_threads: int = config.MAX_THREADS_PER_RUN,
        tz_name: str = config.PIPELINE_TIMEZONE,
        lock: threading.Lock = RUN_LOCK,
    ):
        self.mailbox = mailbox
        self.store = store
        self.llm = llm
        self.workflow = workflow
        self.notifier = notifier if notifier is not None else FailureNotifier(mailbox)
        self.label_name = label_name
        self.since_days = since_days
        self.max_threads = max_threads
        self.tz_name = tz_name
        self.lock = lock

    # ---------------------------------------------------------------
    # Run
    # ---------------------------------------------------------------
    def run_once(self) -> RunResult:
        with try_run_lock(self.lock) as acquired:
            if not acquired:
                return RunResult(skipped_locked=True)
            return self._run_locked()

    def _run_locked(self) -> RunResult:
        run_id = uuid.uuid4().hex
        result = RunResult(run_id=run_id)
        with run_scope(run_id):
            run_log = RunLog(run_id).attach()
            t0 = time.perf_counter()
            try:
                log.info("run_begin", extra={"kv": {"label": self.label_name, "since_days": self.since_days}})
                label_id = self.mailbox.get_or_create_label(self.label_name)
                threads = self.mailbox.search_threads(
                    processed_query(self.label_name, self.since_days), self.max_threads
                )
                result.threads_found = len(threads)

                for thread in threads:
                    if thread_has_label(thread, label_id):
                        log.info("thread_already_processed", extra={"kv": {"thread_id": thread.id}})
                        continue
                    self.handle_thread(thread, result)
                    self.mailbox.add_label(thread, label_id)
                    result.threads_labeled += 1

                log.info("run_complete", extra={"kv": {
                    "threads": result.threads_found,
                    "labeled": result.threads_labeled,
                    "elapsed_ms": int((time.perf_counter() - t0) * 1000),
                    **result.counts(),
                }})
                return result
            except Exception as e:
                log.exception("run_failed", extra={"kv": {"error": str(e)}})
                self.notifier.notify(e, run_log.text())
                raise
            finally:
                run_log.detach()
                result.log_lines = list(run_log.lines)

    def handle_thread(self, thread: MailThread, result: RunResult) -> None:
        for message in thread.messages:
            if not message.is_in_inbox or message.is_draft:
                continue
            result.outcomes.append(self.handle_message(message))

    def handle_message(self, message: MailMessage) -> MessageOutcome:
        with message_scope(message.id):
            log.info("message_begin", extra={"kv": {"subject": (message.subject or "")[:120]}})
            outcome = self.process_payload(build_email_payload(message), message_id=message.id)
            log.info("message_done", extra={"kv": outcome.as_dict()})
            return outcome

    # ---------------------------------------------------------------
    # Per-message state machine
    # ---------------------------------------------------------------
    def process_payload(self, payload: EmailPayload, message_id: str = "") -> MessageOutcome:
        category = classify_email(self.llm, payload)
        if category == NOT_RELEVANT:
            log.info("message_not_relevant")
            return MessageOutcome(MessageState.SKIPPED_IRRELEVANT, category, message_id)

        extracted = extract_fields(self.llm, category, payload)
        record = normalize(extracted, category, payload, self.tz_name)

        t0 = time.perf_counter()
        appended = persist_if_new(self.store, record)
        store_ms = int((time.perf_counter() - t0) * 1000)
        if store_ms > config.SLOW_STORE_MS:
            log.warning("slow_store_persist", extra={"kv": {"elapsed_ms": store_ms}})
        if not appended:
            return MessageOutcome(MessageState.SKIPPED_DUPLICATE, category, message_id, record)

        trigger = self.workflow.trigger(record)
        state = MessageState.TRIGGERED if trigger.started else MessageState.TRIGGER_FAILED
        return MessageOutcome(state, category, message_id, record, trigger)
