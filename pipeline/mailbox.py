"""
pipeline/mailbox.py
-------------------
Mailbox access for the pipeline.

The orchestrator only sees the ``Mailbox`` protocol and the two plain
dataclasses below.  ``GmailMailbox`` implements the protocol on the
Gmail v1 API using a service account with domain-wide delegation
(the service account impersonates ``GOOGLE_DELEGATED_USER``).

Threads are the unit of labelling; messages are the unit of
processing.  Only messages that sit in the inbox and are not drafts
are handed to the pipeline.
"""

# =========================
# Imports & Setup
# =========================
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.text import MIMEText
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from bs4 import BeautifulSoup
from google.oauth2 import service_account
from googleapiclient.discovery import build

from pipeline import config
from pipeline.models import AttachmentInfo, EmailPayload
from pipeline.normalizer import parse_email_address
from pipeline.store import load_service_account_info

log = logging.getLogger("pipeline.mailbox")

INBOX = "INBOX"
DRAFT = "DRAFT"


@dataclass
class MailMessage:
    id: str
    thread_id: str = ""
    label_ids: List[str] = field(default_factory=list)
    subject: str = ""
    from_raw: str = ""
    to: str = ""
    date: Optional[datetime] = None
    plain_body: str = ""
    html_body: str = ""
    attachments: List[AttachmentInfo] = field(default_factory=list)

    @property
    def is_in_inbox(self) -> bool:
        return INBOX in self.label_ids

    @property
    def is_draft(self) -> bool:
        return DRAFT in self.label_ids


@dataclass
class MailThread:
    id: str
    messages: List[MailMessage] = field(default_factory=list)
    label_ids: List[str] = field(default_factory=list)


def thread_has_label(thread: MailThread, label_id: str) -> bool:
    if label_id in thread.label_ids:
        return True
    return any(label_id in m.label_ids for m in thread.messages)


def processed_query(label_name: str, since_days: int) -> str:
    """Gmail search for unprocessed inbox threads of the last ``since_days`` days."""
    quoted = f'"{label_name}"' if " " in label_name else label_name
    return f"in:inbox -label:{quoted} newer_than:{since_days}d"


def html_to_text(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text("\n", strip=True)


def build_email_payload(message: MailMessage) -> EmailPayload:
    """Snapshot a message into the structure the AI clients see."""
    from_name, from_email = parse_email_address(message.from_raw)
    plain = message.plain_body or html_to_text(message.html_body)
    return EmailPayload(
        subject=message.subject or "",
        from_raw=message.from_raw or "",
        from_name=from_name,
        from_email=from_email,
        to=message.to or "",
        date=message.date,
        plain_body=plain,
        html_body=message.html_body or "",
        attachments=list(message.attachments),
    )


@runtime_checkable
class Mailbox(Protocol):
    def search_threads(self, query: str, max_results: int) -> List[MailThread]: ...
    def get_or_create_label(self, name: str) -> str: ...
    def add_label(self, thread: MailThread, label_id: str) -> None: ...
    def send_mail(self, to: str, subject: str, body: str) -> None: ...


# =========================
# Gmail payload helpers
# =========================
def _decode_body(data: str) -> str:
    if not data:
        return ""
    return base64.urlsafe_b64decode(data.encode("ascii")).decode("utf-8", errors="replace")


def _extract_body(payload: Dict[str, Any], mime_type: str) -> str:
    """Recursively find the first non-attachment part of ``mime_type``."""
    if payload.get("mimeType") == mime_type and not payload.get("filename"):
        data = (payload.get("body") or {}).get("data", "")
        if data:
            return _decode_body(data)
    for part in payload.get("parts", []) or []:
        text = _extract_body(part, mime_type)
        if text:
            return text
    return ""


def _headers(payload: Dict[str, Any]) -> Dict[str, str]:
    return {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", []) or []}


def _is_inline(part: Dict[str, Any]) -> bool:
    disposition = _headers(part).get("content-disposition", "")
    return disposition.lower().startswith("inline")


def _collect_attachments(payload: Dict[str, Any], out: List[AttachmentInfo]) -> List[AttachmentInfo]:
    if payload.get("filename") and not _is_inline(payload):
        out.append(AttachmentInfo(
            name=payload["filename"],
            content_type=payload.get("mimeType", ""),
            length=int((payload.get("body") or {}).get("size", 0) or 0),
        ))
    for part in payload.get("parts", []) or []:
        _collect_attachments(part, out)
    return out


def _message_date(msg: Dict[str, Any], headers: Dict[str, str]) -> Optional[datetime]:
    internal = msg.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            pass
    raw = headers.get("date")
    if not raw:
        return None
    try:
        return parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None


def parse_gmail_message(msg: Dict[str, Any]) -> MailMessage:
    payload = msg.get("payload", {}) or {}
    headers = _headers(payload)
    return MailMessage(
        id=msg.get("id", ""),
        thread_id=msg.get("threadId", ""),
        label_ids=list(msg.get("labelIds", []) or []),
        subject=headers.get("subject", ""),
        from_raw=headers.get("from", ""),
        to=headers.get("to", ""),
        date=_message_date(msg, headers),
        plain_body=_extract_body(payload, "text/plain"),
        html_body=_extract_body(payload, "text/html"),
        attachments=_collect_attachments(payload, []),
    )


# =========================
# Gmail mailbox
# =========================
class GmailMailbox:
    """Gmail v1 client impersonating the monitored mailbox."""

    SCOPES = [
        "https://www.googleapis.com/auth/gmail.modify",
        "https://www.googleapis.com/auth/gmail.send",
    ]

    def __init__(
        self,
        service_account_json: str = config.GOOGLE_SERVICE_ACCOUNT_JSON,
        delegated_user: str = config.GOOGLE_DELEGATED_USER,
        service: Any = None,
    ):
        self.delegated_user = delegated_user
        self._service_account_json = service_account_json
        self._service = service

    @property
    def service(self):
        if self._service is None:
            self._service = self._build_service(self._service_account_json, self.delegated_user)
        return self._service

    def _build_service(self, service_account_json: str, delegated_user: str):
        if not delegated_user:
            raise RuntimeError(
                "Missing GOOGLE_DELEGATED_USER: set it to the mailbox the service account impersonates."
            )
        credentials = service_account.Credentials.from_service_account_info(
            load_service_account_info(service_account_json),
            scopes=self.SCOPES,
            subject=delegated_user,
        )
        service = build("gmail", "v1", credentials=credentials, cache_discovery=False)
        log.info("gmail_client_initialized", extra={"kv": {"user": delegated_user}})
        return service

    def search_threads(self, query: str, max_results: int) -> List[MailThread]:
        refs: List[Dict[str, Any]] = []
        page_token = None
        while len(refs) < max_results:
            resp = self.service.users().threads().list(
                userId="me",
                q=query,
                maxResults=min(100, max_results - len(refs)),
                pageToken=page_token,
            ).execute()
            refs.extend(resp.get("threads", []) or [])
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        log.info("gmail_threads_found", extra={"kv": {"query": query, "count": len(refs)}})
        return [self._get_thread(ref["id"]) for ref in refs[:max_results]]

    def _get_thread(self, thread_id: str) -> MailThread:
        raw = self.service.users().threads().get(userId="me", id=thread_id, format="full").execute()
        messages = [parse_gmail_message(m) for m in raw.get("messages", []) or []]
        labels = sorted({lid for m in messages for lid in m.label_ids})
        return MailThread(id=thread_id, messages=messages, label_ids=labels)

    def get_or_create_label(self, name: str) -> str:
        resp = self.service.users().labels().list(userId="me").execute()
        for label in resp.get("labels", []) or []:
            if label.get("name") == name:
                return label["id"]
        created = self.service.users().labels().create(
            userId="me",
            body={"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"},
        ).execute()
        log.info("gmail_label_created", extra={"kv": {"label": name, "id": created.get("id")}})
        return created["id"]

    def add_label(self, thread: MailThread, label_id: str) -> None:
        self.service.users().threads().modify(
            userId="me", id=thread.id, body={"addLabelIds": [label_id]},
        ).execute()
        thread.label_ids.append(label_id)

    def send_mail(self, to: str, subject: str, body: str) -> None:
        mime = MIMEText(body, "plain", "utf-8")
        mime["to"] = to
        mime["subject"] = subject
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")
        self.service.users().messages().send(userId="me", body={"raw": raw}).execute()
        log.info("gmail_mail_sent", extra={"kv": {"to": to, "subject": subject}})
