"""
Advisory run lock.

Dedup is check-then-append against the sheet, so two overlapping runs
could both decide a record is new.  Runs therefore take this lock
without blocking; a run that finds it held does nothing.  The lock is
process-local: deployments must run a single worker process.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

log = logging.getLogger("pipeline.run_lock")

RUN_LOCK = threading.Lock()


@contextmanager
def try_run_lock(lock: threading.Lock = RUN_LOCK) -> Iterator[bool]:
    """Yield True if the lock was taken (and release it on exit), else False."""
    acquired = lock.acquire(blocking=False)
    if not acquired:
        log.warning("run_lock_busy")
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()


def is_running(lock: threading.Lock = RUN_LOCK) -> bool:
    return lock.locked()
