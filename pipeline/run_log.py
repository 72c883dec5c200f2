"""
Per-run log accumulator.

A ``RunLog`` is a logging handler that lives for exactly one pipeline run.
It is attached to the ``pipeline`` logger when the run starts and
detached when it ends, and it keeps only records emitted under its own
``run_id`` so concurrent activity (HTTP callbacks, dashboard reads) never
leaks into the run's transcript.  The collected lines are mailed to the
operator when a run fails and returned with the run result otherwise.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List

from logging_setup import human_kv, record_kv, run_id_var

PIPELINE_LOGGER = "pipeline"


class RunLog(logging.Handler):
    def __init__(self, run_id: str, level: int = logging.NOTSET):
        super().__init__(level)
        self.run_id = run_id
        self.lines: List[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        if run_id_var.get() != self.run_id:
            return
        try:
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
            line = f"[{ts}] {record.getMessage()}"
            kv = record_kv(record)
            if kv:
                line += " | " + human_kv(kv)
            self.lines.append(line)
        except Exception:
            self.handleError(record)

    def text(self) -> str:
        return "\n".join(self.lines)

    def attach(self, logger_name: str = PIPELINE_LOGGER) -> "RunLog":
        logging.getLogger(logger_name).addHandler(self)
        return self

    def detach(self, logger_name: str = PIPELINE_LOGGER) -> None:
        logging.getLogger(logger_name).removeHandler(self)
