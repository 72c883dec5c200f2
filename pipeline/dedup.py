"""
pipeline/dedup.py
-----------------
Exact-match duplicate gate in front of the sheet.

The dedup key of a row is every column rendered as trimmed text and
joined with ``||``.  A record is a duplicate iff some stored row has the
same key.  The check is a full scan of the sheet; there is no index.

Check-then-append is not atomic.  It is only correct while a single
pipeline run executes at a time (see ``pipeline.run_lock``).
"""

import logging
import math
from typing import Any, Iterable

from pipeline.models import CanonicalRecord
from pipeline.store import TabularStore

log = logging.getLogger("pipeline.dedup")

KEY_SEPARATOR = "||"


def cell_text(value: Any) -> str:
    """Render a cell the way the sheet shows it: integral floats lose ``.0``."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def build_row_key(values: Iterable[Any]) -> str:
    return KEY_SEPARATOR.join(cell_text(v) for v in values)


def record_key(record: CanonicalRecord) -> str:
    return build_row_key(record.to_row())


def is_duplicate(store: TabularStore, record: CanonicalRecord) -> bool:
    new_key = record_key(record)
    return any(build_row_key(row) == new_key for row in store.get_all_rows())


def append_record(store: TabularStore, record: CanonicalRecord) -> None:
    store.append_row(record.to_row())


def persist_if_new(store: TabularStore, record: CanonicalRecord) -> bool:
    """Append ``record`` unless an identical row exists.  True iff appended."""
    store.ensure_headers()
    if is_duplicate(store, record):
        log.info("duplicate_row_skipped", extra={"kv": {"InvoiceNb": record.invoice_nb}})
        return False
    append_record(store, record)
    log.info("row_appended", extra={"kv": {"InvoiceNb": record.invoice_nb}})
    return True
