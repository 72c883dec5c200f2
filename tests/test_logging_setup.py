"""Tests for the shared logging helpers and per-run transcript."""

import logging

from logging_setup import (
    _CtxFilter,
    _HumanFormatter,
    init_logging,
    message_id_var,
    message_scope,
    record_kv,
    run_id_var,
    run_scope,
)
from pipeline.run_log import RunLog


def make_record(msg: str = "llm_response", kv=None) -> logging.LogRecord:
    record = logging.LogRecord("pipeline.test", logging.INFO, __file__, 1, msg, None, None)
    if kv is not None:
        record.kv = kv
    return record


# ── context scopes ─────────────────────────────────────────────────────────────


class TestScopes:
    def test_run_scope_restores_previous_value(self) -> None:
        assert run_id_var.get() is None
        with run_scope("run-1"):
            assert run_id_var.get() == "run-1"
            with run_scope("run-2"):
                assert run_id_var.get() == "run-2"
            assert run_id_var.get() == "run-1"
        assert run_id_var.get() is None

    def test_message_scope_resets_on_error(self) -> None:
        try:
            with message_scope("msg-1"):
                raise ValueError("boom")
        except ValueError:
            pass
        assert message_id_var.get() is None

    def test_filter_tags_record_with_context(self) -> None:
        record = make_record()
        with run_scope("run-1"), message_scope("msg-1"):
            _CtxFilter("svc").filter(record)
        assert (record.service, record.run_id, record.message_id) == ("svc", "run-1", "msg-1")


# ── formatting ─────────────────────────────────────────────────────────────────


class TestFormatting:
    def test_record_kv(self) -> None:
        assert record_kv(make_record(kv={"a": 1})) == {"a": 1}
        assert record_kv(make_record()) == {}
        assert record_kv(make_record(kv="not a mapping")) == {}

    def test_human_line_carries_context_and_kv(self) -> None:
        record = make_record(kv={"purpose": "classify", "elapsed_ms": 12})
        with run_scope("run-1"):
            _CtxFilter("svc").filter(record)
        line = _HumanFormatter().format(record)
        assert "INFO svc pipeline.test: llm_response" in line
        assert "run_id=run-1" in line
        assert "purpose=classify elapsed_ms=12" in line

    def test_google_client_noise_is_held_at_warning(self) -> None:
        init_logging()
        assert logging.getLogger("googleapiclient.discovery").level == logging.WARNING


# ── run transcript ─────────────────────────────────────────────────────────────


class TestRunLog:
    def test_only_records_of_its_own_run(self) -> None:
        run_log = RunLog("run-1")
        with run_scope("run-1"):
            run_log.handle(make_record("mine", kv={"InvoiceNb": "R-1"}))
        with run_scope("run-2"):
            run_log.handle(make_record("other"))
        run_log.handle(make_record("outside"))

        assert len(run_log.lines) == 1
        assert run_log.lines[0].endswith("mine | InvoiceNb=R-1")
        assert run_log.text() == run_log.lines[0]
