"""Shared pytest fixtures and in-memory doubles for the remote collaborators."""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from pipeline.auth import clear_token_cache
from pipeline.mailbox import MailMessage, MailThread
from pipeline.models import TriggerReason, TriggerResult
from pipeline.store import InMemoryStore


# ── Helpers ────────────────────────────────────────────────────────────────────


def envelope(content: Any) -> str:
    """Wrap model content the way the orchestration gateway does."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return json.dumps({"orchestration_result": {"choices": [{"message": {"content": content}}]}})


def make_message(**kwargs: Any) -> MailMessage:
    defaults: Dict[str, Any] = dict(
        id="msg_1",
        thread_id="thread_1",
        label_ids=["INBOX"],
        subject="Ihre Stromrechnung März 2025",
        from_raw="Stadtwerke Nord <rechnung@sw-nord.de>",
        to="sustainability@example.com",
        date=datetime(2025, 3, 31, 23, 30, tzinfo=timezone.utc),
        plain_body="Rechnung R-1: Verbrauch 1842 kWh, Gesamtbetrag 512,30 EUR",
    )
    return MailMessage(**{**defaults, **kwargs})


def make_thread(thread_id: str = "thread_1", messages: Optional[List[MailMessage]] = None) -> MailThread:
    return MailThread(id=thread_id, messages=messages if messages is not None else [make_message()])


# ── Doubles ────────────────────────────────────────────────────────────────────


class FakeLLM:
    """Stand-in for ``AICoreClient``: replies are scripted per call purpose."""

    def __init__(self, replies: Optional[Dict[str, Any]] = None, default: Optional[str] = None):
        self.replies = dict(replies or {})
        self.default = default
        self.calls: List[tuple] = []

    def complete(self, prompt: str, purpose: str = "completion") -> Optional[str]:
        self.calls.append((purpose, prompt))
        reply = self.replies.get(purpose, self.default)
        return reply(prompt) if callable(reply) else reply

    @property
    def purposes(self) -> List[str]:
        return [p for p, _ in self.calls]


class FakeWorkflow:
    def __init__(self, result: Optional[TriggerResult] = None):
        self.result = result or TriggerResult(started=True, reason=TriggerReason.STARTED, instance_id="wf-1")
        self.records: List[Any] = []

    def trigger(self, record):
        self.records.append(record)
        return self.result


class FakeMailbox:
    def __init__(self, threads: Optional[List[MailThread]] = None):
        self.threads = threads or []
        self.labels: Dict[str, str] = {}
        self.queries: List[str] = []
        self.labelled: List[tuple] = []
        self.sent: List[tuple] = []

    def search_threads(self, query: str, max_results: int) -> List[MailThread]:
        self.queries.append(query)
        return self.threads[:max_results]

    def get_or_create_label(self, name: str) -> str:
        return self.labels.setdefault(name, f"Label_{len(self.labels) + 1}")

    def add_label(self, thread: MailThread, label_id: str) -> None:
        self.labelled.append((thread.id, label_id))
        thread.label_ids.append(label_id)

    def send_mail(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _fresh_token_cache():
    clear_token_cache()
    yield
    clear_token_cache()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def workflow() -> FakeWorkflow:
    return FakeWorkflow()


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()
