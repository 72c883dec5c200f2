"""End-to-end tests for a pipeline run over fake collaborators."""

import logging
import threading
from unittest.mock import MagicMock, patch

import pytest

from pipeline.llm_client import AICoreClient
from pipeline.models import NOT_RELEVANT, SHEET_HEADERS, TriggerReason, TriggerResult
from pipeline.notifier import SUBJECT, FailureNotifier
from pipeline.orchestrator import MailPipeline, MessageState
from pipeline.store import InMemoryStore
from tests.conftest import FakeLLM, FakeMailbox, FakeWorkflow, envelope, make_message, make_thread

ELECTRICITY = {
    "classify": envelope({"class": "ENERGY_INVOICE_ELECTRICITY"}),
    "extract": envelope({"InvoiceNb": "R-1", "Energykhw": 1842, "Price": 512.3, "Unit": "kWh"}),
}


def make_pipeline(mailbox, store, llm, workflow, **kwargs) -> MailPipeline:
    kwargs.setdefault("notifier", FailureNotifier(mailbox, recipient="ops@example.com"))
    kwargs.setdefault("lock", threading.Lock())
    return MailPipeline(mailbox, store, llm, workflow, tz_name="Europe/Berlin", **kwargs)


def row_as_dict(row) -> dict:
    return dict(zip(SHEET_HEADERS, row))


# ── happy path ─────────────────────────────────────────────────────────────────


class TestRelevantInvoice:
    def test_row_appended_and_workflow_started(self, store, workflow) -> None:
        mailbox = FakeMailbox([make_thread()])
        llm = FakeLLM(ELECTRICITY)
        result = make_pipeline(mailbox, store, llm, workflow).run_once()

        assert llm.purposes == ["classify", "extract"]
        assert len(store.rows) == 1
        row = row_as_dict(store.rows[0])
        assert row["InvoiceNb"] == "R-1"
        assert row["Date"] == "2025-04-01"
        assert row["Supplier"] == "Stadtwerke Nord"
        assert row["SupplierEmail"] == "rechnung@sw-nord.de"
        assert row["Category"] == "ENERGY_INVOICE_ELECTRICITY"
        assert row["Price"] == 512.3

        assert [r.invoice_nb for r in workflow.records] == ["R-1"]
        assert [o.state for o in result.outcomes] == [MessageState.TRIGGERED]
        assert mailbox.labelled == [("thread_1", "Label_1")]
        assert result.threads_found == 1 and result.threads_labeled == 1

    def test_search_query_excludes_processed_label(self, store, workflow) -> None:
        mailbox = FakeMailbox([])
        make_pipeline(mailbox, store, FakeLLM(ELECTRICITY), workflow, since_days=3).run_once()
        assert mailbox.queries == ["in:inbox -label:SAP_SUSTAINABILITY_PROCESSED newer_than:3d"]

    def test_trigger_failure_keeps_row(self, store) -> None:
        workflow = FakeWorkflow(TriggerResult(started=False, reason=TriggerReason.NO_TOKEN))
        mailbox = FakeMailbox([make_thread()])
        result = make_pipeline(mailbox, store, FakeLLM(ELECTRICITY), workflow).run_once()

        assert len(store.rows) == 1
        assert result.outcomes[0].state == MessageState.TRIGGER_FAILED
        assert result.counts()["trigger_failed"] == 1
        assert mailbox.labelled


# ── skips ──────────────────────────────────────────────────────────────────────


class TestSkips:
    def test_irrelevant_mail_is_not_extracted(self, store, workflow) -> None:
        mailbox = FakeMailbox([make_thread()])
        llm = FakeLLM({"classify": envelope({"class": NOT_RELEVANT})})
        result = make_pipeline(mailbox, store, llm, workflow).run_once()

        assert llm.purposes == ["classify"]
        assert store.rows == []
        assert workflow.records == []
        assert result.outcomes[0].state == MessageState.SKIPPED_IRRELEVANT
        assert mailbox.labelled == [("thread_1", "Label_1")]

    def test_replayed_mail_is_duplicate(self, workflow) -> None:
        store = InMemoryStore()
        llm = FakeLLM(ELECTRICITY)
        make_pipeline(FakeMailbox([make_thread()]), store, llm, workflow).run_once()
        result = make_pipeline(FakeMailbox([make_thread()]), store, llm, workflow).run_once()

        assert len(store.rows) == 1
        assert len(workflow.records) == 1
        assert result.outcomes[0].state == MessageState.SKIPPED_DUPLICATE

    def test_drafts_and_sent_mail_are_ignored(self, store, workflow) -> None:
        thread = make_thread(messages=[
            make_message(id="draft", label_ids=["INBOX", "DRAFT"]),
            make_message(id="sent", label_ids=["SENT"]),
            make_message(id="real"),
        ])
        llm = FakeLLM(ELECTRICITY)
        result = make_pipeline(FakeMailbox([thread]), store, llm, workflow).run_once()
        assert [o.message_id for o in result.outcomes] == ["real"]

    def test_labelled_thread_is_skipped(self, store, workflow) -> None:
        thread = make_thread()
        thread.label_ids.append("Label_1")
        mailbox = FakeMailbox([thread])
        llm = FakeLLM(ELECTRICITY)
        result = make_pipeline(mailbox, store, llm, workflow).run_once()

        assert llm.calls == []
        assert result.threads_labeled == 0
        assert mailbox.labelled == []


# ── fail-closed model access ───────────────────────────────────────────────────


class TestFailClosedRun:
    def make_client(self, session) -> AICoreClient:
        return AICoreClient(
            api_url="https://aic.example", token_url="https://auth.example/token",
            client_id="cid", client_secret="sec", deployment_id="dep", session=session,
        )

    def test_no_token_skips_message_and_labels_thread(self, store, workflow) -> None:
        session = MagicMock()
        mailbox = FakeMailbox([make_thread()])
        with patch("pipeline.llm_client.get_oauth_token", return_value=None) as get_token:
            result = make_pipeline(mailbox, store, self.make_client(session), workflow).run_once()

        # one token attempt: classification only, extraction never reached
        assert get_token.call_count == 1
        session.post.assert_not_called()
        assert [o.state for o in result.outcomes] == [MessageState.SKIPPED_IRRELEVANT]
        assert result.outcomes[0].category == NOT_RELEVANT
        assert store.rows == []
        assert workflow.records == []
        assert mailbox.labelled == [("thread_1", "Label_1")]
        assert mailbox.sent == []

    def test_pathological_answer_does_not_block_the_thread(self, store, workflow) -> None:
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=200, text=envelope("[" * 100000))
        mailbox = FakeMailbox([make_thread()])
        with patch("pipeline.llm_client.get_oauth_token", return_value="tok"):
            result = make_pipeline(mailbox, store, self.make_client(session), workflow).run_once()

        assert session.post.call_count == 1
        assert result.outcomes[0].state == MessageState.SKIPPED_IRRELEVANT
        assert store.rows == []
        assert mailbox.labelled == [("thread_1", "Label_1")]


# ── failures and locking ───────────────────────────────────────────────────────


class BrokenStore(InMemoryStore):
    def get_all_rows(self):
        raise RuntimeError("sheet unavailable")


class TestRunFailure:
    def test_error_is_mailed_and_reraised(self, workflow, caplog) -> None:
        caplog.set_level(logging.INFO, logger="pipeline")
        mailbox = FakeMailbox([make_thread()])
        pipeline = make_pipeline(mailbox, BrokenStore(), FakeLLM(ELECTRICITY), workflow)

        with pytest.raises(RuntimeError, match="sheet unavailable"):
            pipeline.run_once()

        assert mailbox.labelled == []
        assert workflow.records == []
        [(to, subject, body)] = mailbox.sent
        assert to == "ops@example.com"
        assert subject == SUBJECT
        assert "sheet unavailable" in body
        assert "run_begin" in body

    def test_lock_released_after_failure(self, workflow) -> None:
        lock = threading.Lock()
        pipeline = make_pipeline(FakeMailbox([make_thread()]), BrokenStore(), FakeLLM(ELECTRICITY), workflow, lock=lock)
        with pytest.raises(RuntimeError):
            pipeline.run_once()
        assert not lock.locked()

    def test_notifier_without_recipient_is_skipped(self, workflow) -> None:
        mailbox = FakeMailbox([make_thread()])
        notifier = FailureNotifier(mailbox, recipient="")
        pipeline = make_pipeline(mailbox, BrokenStore(), FakeLLM(ELECTRICITY), workflow, notifier=notifier)
        with pytest.raises(RuntimeError):
            pipeline.run_once()
        assert mailbox.sent == []


class TestRunLock:
    def test_busy_lock_skips_run(self, store, workflow) -> None:
        lock = threading.Lock()
        mailbox = FakeMailbox([make_thread()])
        pipeline = make_pipeline(mailbox, store, FakeLLM(ELECTRICITY), workflow, lock=lock)

        lock.acquire()
        try:
            result = pipeline.run_once()
        finally:
            lock.release()

        assert result.skipped_locked is True
        assert mailbox.queries == []
        assert store.rows == []


class TestRunLog:
    def test_log_lines_are_collected(self, store, workflow, caplog) -> None:
        caplog.set_level(logging.INFO, logger="pipeline")
        result = make_pipeline(FakeMailbox([make_thread()]), store, FakeLLM(ELECTRICITY), workflow).run_once()

        assert result.run_id
        assert any("run_begin" in line for line in result.log_lines)
        assert any("run_complete" in line for line in result.log_lines)

    def test_log_carries_extracted_and_normalized_values(self, store, workflow, caplog) -> None:
        caplog.set_level(logging.INFO, logger="pipeline")
        result = make_pipeline(FakeMailbox([make_thread()]), store, FakeLLM(ELECTRICITY), workflow).run_once()

        [extracted] = [line for line in result.log_lines if "llm_extract_values" in line]
        assert "Energykhw=1842" in extracted
        [normalized] = [line for line in result.log_lines if "record_normalized" in line]
        assert "InvoiceNb=R-1" in normalized
        assert "Supplier=Stadtwerke Nord" in normalized
        assert "Date=2025-04-01" in normalized

    def test_failure_mail_carries_record_values(self, workflow, caplog) -> None:
        caplog.set_level(logging.INFO, logger="pipeline")
        mailbox = FakeMailbox([make_thread()])
        pipeline = make_pipeline(mailbox, BrokenStore(), FakeLLM(ELECTRICITY), workflow)
        with pytest.raises(RuntimeError):
            pipeline.run_once()
        [(_, _, body)] = mailbox.sent
        assert "InvoiceNb=R-1" in body

    def test_outcome_summary(self, store, workflow) -> None:
        result = make_pipeline(FakeMailbox([make_thread()]), store, FakeLLM(ELECTRICITY), workflow).run_once()
        summary = result.outcomes[0].as_dict()
        assert summary["state"] == "triggered"
        assert summary["invoice_nb"] == "R-1"
        assert summary["trigger_reason"] == "started"
