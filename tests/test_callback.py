"""Tests for the workflow completion callback."""

from unittest.mock import MagicMock

import pytest

from pipeline.callback import (
    MSG_DELETED,
    MSG_NO_INVOICE,
    MSG_NO_PAYLOAD,
    MSG_NO_ROWS,
    MSG_NOT_FOUND,
    MSG_RETAINED,
    handle_completion,
    parse_success_flag,
)
from pipeline.models import CanonicalRecord
from pipeline.store import InMemoryStore


def store_with(*invoice_numbers: str) -> InMemoryStore:
    return InMemoryStore(rows=[CanonicalRecord(InvoiceNb=n, Price=1).to_row() for n in invoice_numbers])


class TestSuccessFlag:
    @pytest.mark.parametrize(
        "value, expected",
        [(True, True), ("true", True), (False, False), ("false", False), ("True", False), (1, False), (None, False)],
    )
    def test_only_true_or_string_true(self, value, expected) -> None:
        assert parse_success_flag(value) is expected


class TestHandleCompletion:
    def test_failed_workflow_deletes_row(self) -> None:
        store = store_with("A", "B", "C")
        assert handle_completion(store, {"InvoiceNb": "B", "success": False}) == MSG_DELETED
        assert [r[0] for r in store.rows] == ["A", "C"]

    def test_string_false_deletes_row(self) -> None:
        store = store_with("A")
        assert handle_completion(store, {"InvoiceNb": "A", "success": "false"}) == MSG_DELETED
        assert store.rows == []

    def test_missing_success_flag_counts_as_failure(self) -> None:
        store = store_with("A")
        assert handle_completion(store, {"InvoiceNb": "A"}) == MSG_DELETED

    def test_successful_workflow_retains_row(self) -> None:
        store = store_with("A", "B")
        assert handle_completion(store, {"InvoiceNb": "B", "success": "true"}) == MSG_RETAINED
        assert len(store.rows) == 2

    def test_not_found(self) -> None:
        store = store_with("A")
        assert handle_completion(store, {"InvoiceNb": "Z", "success": False}) == MSG_NOT_FOUND
        assert len(store.rows) == 1

    def test_no_rows(self) -> None:
        assert handle_completion(InMemoryStore(), {"InvoiceNb": "A", "success": False}) == MSG_NO_ROWS

    @pytest.mark.parametrize("payload", [None, [], "text"])
    def test_invalid_payload(self, payload) -> None:
        assert handle_completion(store_with("A"), payload) == MSG_NO_PAYLOAD

    def test_missing_invoice(self) -> None:
        assert handle_completion(store_with("A"), {"success": False}) == MSG_NO_INVOICE
        assert handle_completion(store_with("A"), {}) == MSG_NO_INVOICE
        assert handle_completion(store_with("A"), {"InvoiceNb": "", "success": False}) == MSG_NO_INVOICE

    def test_numeric_invoice_matches_text_cell(self) -> None:
        store = store_with("1001")
        assert handle_completion(store, {"InvoiceNb": 1001, "success": False}) == MSG_DELETED

    def test_duplicate_ids_delete_first_match_only(self) -> None:
        store = store_with("A", "X", "A")
        store.rows[2][1] = "2025-02-01"
        assert handle_completion(store, {"InvoiceNb": "A", "success": False}) == MSG_DELETED
        assert [r[0] for r in store.rows] == ["X", "A"]
        assert store.rows[1][1] == "2025-02-01"

    def test_store_error_is_narrated(self) -> None:
        store = MagicMock()
        store.get_all_rows.side_effect = RuntimeError("quota exceeded")
        message = handle_completion(store, {"InvoiceNb": "A", "success": False})
        assert message == "Error processing request: quota exceeded"
