"""
pipeline/notifier.py
--------------------
Mails the operator when a run aborts.  The message carries the error,
its traceback and the run's log transcript.  Notification is best
effort: a failure to send is logged and never replaces the original
error.
"""

import logging
import traceback
from typing import Optional

from pipeline import config
from pipeline.mailbox import Mailbox

log = logging.getLogger("pipeline.notifier")

SUBJECT = "SAP Sustainability Pipeline - Script Failure"


def format_failure(error: BaseException, run_log_text: str) -> str:
    tb = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return (
        "The sustainability mail pipeline failed.\n\n"
        f"Error: {error}\n\n"
        f"Stack:\n{tb}\n"
        f"Execution log:\n{run_log_text or '(empty)'}\n"
    )


class FailureNotifier:
    def __init__(self, mailbox: Optional[Mailbox], recipient: str = config.LOG_EMAIL):
        self.mailbox = mailbox
        self.recipient = recipient

    def notify(self, error: BaseException, run_log_text: str = "") -> bool:
        """Send the failure mail; True iff it was handed to the mailbox."""
        if not self.recipient or self.mailbox is None:
            log.warning("failure_notify_skipped", extra={"kv": {"reason": "no recipient or mailbox"}})
            return False
        try:
            self.mailbox.send_mail(self.recipient, SUBJECT, format_failure(error, run_log_text))
        except Exception as e:
            log.error("failure_notify_error", extra={"kv": {"error": str(e)}})
            return False
        log.info("failure_notify_sent", extra={"kv": {"to": self.recipient}})
        return True
