"""
pipeline/callback.py
--------------------
Completion callback from the downstream workflow.

The workflow reports ``{"InvoiceNb": ..., "success": ...}`` once it has
finished.  A failed workflow removes the stored row so the invoice can
be picked up again; a successful one leaves it in place.  Every outcome
is narrated as a message string; nothing is raised to the HTTP layer.

Invoice ids are expected to be unique in the sheet.  This is a
precondition, not something the store enforces: if several rows carry
the same id only the first is deleted and the violation is logged.
"""

import logging
from typing import Any, List

from pipeline.dedup import cell_text
from pipeline.store import TabularStore

log = logging.getLogger("pipeline.callback")

MSG_NO_PAYLOAD = "Invalid request: no payload received."
MSG_NO_INVOICE = "Invalid request: no InvoiceNb provided."
MSG_NO_ROWS = "No data rows available. Invoice not found."
MSG_NOT_FOUND = "Row not found for the provided InvoiceNb."
MSG_DELETED = "Row found and deleted because the success flag was false."
MSG_RETAINED = "Row found and retained because the success flag was true."


def parse_success_flag(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value == "true")


def _matching_indexes(rows: List[List[Any]], invoice_nb: str) -> List[int]:
    return [i for i, row in enumerate(rows) if row and cell_text(row[0]) == invoice_nb]


def handle_completion(store: TabularStore, payload: Any) -> str:
    if not isinstance(payload, dict):
        return MSG_NO_PAYLOAD

    invoice_nb = payload.get("InvoiceNb")
    if invoice_nb is None or invoice_nb == "":
        return MSG_NO_INVOICE
    invoice_nb = cell_text(invoice_nb)
    success = parse_success_flag(payload.get("success"))

    try:
        rows = store.get_all_rows()
        if not rows:
            return MSG_NO_ROWS

        matches = _matching_indexes(rows, invoice_nb)
        if not matches:
            log.info("callback_not_found", extra={"kv": {"InvoiceNb": invoice_nb}})
            return MSG_NOT_FOUND
        if len(matches) > 1:
            log.warning(
                "callback_duplicate_invoice_ids",
                extra={"kv": {"InvoiceNb": invoice_nb, "rows": len(matches)}},
            )

        if success:
            log.info("callback_row_retained", extra={"kv": {"InvoiceNb": invoice_nb}})
            return MSG_RETAINED

        store.delete_row(matches[0])
        log.info("callback_row_deleted", extra={"kv": {"InvoiceNb": invoice_nb, "index": matches[0]}})
        return MSG_DELETED
    except Exception as e:
        log.exception("callback_error")
        return f"Error processing request: {e}"
