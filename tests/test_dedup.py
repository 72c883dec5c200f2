"""Tests for the exact-match duplicate gate."""

import pytest

from pipeline.dedup import build_row_key, cell_text, is_duplicate, persist_if_new, record_key
from pipeline.models import SHEET_HEADERS, CanonicalRecord
from pipeline.store import InMemoryStore


def full_record(**overrides) -> CanonicalRecord:
    base = {h: f"v{i}" for i, h in enumerate(SHEET_HEADERS)}
    base.update(overrides)
    return CanonicalRecord(**base)


# ── keys ───────────────────────────────────────────────────────────────────────


class TestRowKey:
    def test_cell_text(self) -> None:
        assert cell_text(None) == ""
        assert cell_text("  a ") == "a"
        assert cell_text(12.0) == "12"
        assert cell_text(12.5) == "12.5"
        assert cell_text(7) == "7"
        assert cell_text(True) == "true"

    def test_join_with_separator(self) -> None:
        assert build_row_key(["a", None, 3]) == "a||||3"

    def test_identical_records_share_a_key(self) -> None:
        assert record_key(CanonicalRecord()) == record_key(CanonicalRecord())
        assert record_key(full_record()) == record_key(full_record())

    @pytest.mark.parametrize("header", SHEET_HEADERS)
    def test_any_single_field_change_changes_key(self, header: str) -> None:
        assert record_key(full_record()) != record_key(full_record(**{header: "changed"}))

    def test_numeric_and_text_forms_match(self) -> None:
        # A number read back from the sheet equals the number that was written
        assert record_key(CanonicalRecord(Price=512)) == build_row_key(CanonicalRecord(Price=512.0).to_row())


# ── gate ───────────────────────────────────────────────────────────────────────


class TestPersistIfNew:
    def test_idempotent_append(self) -> None:
        store = InMemoryStore()
        record = full_record()
        assert persist_if_new(store, record) is True
        assert persist_if_new(store, record) is False
        assert len(store.rows) == 1

    def test_distinct_records_both_stored(self) -> None:
        store = InMemoryStore()
        persist_if_new(store, full_record())
        persist_if_new(store, full_record(InvoiceNb="other"))
        assert len(store.rows) == 2

    def test_writes_header_when_missing(self) -> None:
        store = InMemoryStore(with_header=False)
        persist_if_new(store, full_record())
        assert store.header == SHEET_HEADERS

    def test_is_duplicate_against_preexisting_rows(self) -> None:
        record = full_record()
        store = InMemoryStore(rows=[record.to_row()])
        assert is_duplicate(store, record) is True
        assert is_duplicate(store, full_record(Unit="kg")) is False
