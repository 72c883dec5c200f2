"""
Model response decoding
=======================

The AI Core gateway answers in one of several envelopes depending on
the orchestration variant in front of the model.  ``parse`` resolves the
envelope through an ordered list of shape predicates, pulls out the
first choice's message content and decodes the JSON object the model
wrote into it.  Anything it cannot make sense of becomes ``{}``; this
module never raises.

Known envelopes, in resolution order:

``orchestration_result``
    ``{"orchestration_result": {"choices": [{"message": {"content": ...}}]}}``
``module_results``
    ``{"module_results": {"llm": {"choices": [{"message": {"content": ...}}]}}}``
``chat_completion``
    ``{"choices": [{"message": {"content": ...}}]}``
``flat``
    The model's object itself, recognised by a ``class`` key or any sheet
    header key.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from pipeline.models import SHEET_HEADERS

log = logging.getLogger("pipeline.response_parser")

FLAT_KEYS = frozenset(["class", *SHEET_HEADERS])

_FENCE_OPEN = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?")
_FIRST_OBJECT = re.compile(r"\{[\s\S]*\}")
_HEADING = re.compile(r"^#{1,6}\s*", re.M)
_MAX_SCAN_STARTS = 64


# ---------------------------------------------------------------------------
# Envelope shapes
# ---------------------------------------------------------------------------
def _first_choice_content(choices: Any) -> Any:
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    return message.get("content")


def _orchestration_result(outer: Dict[str, Any]) -> Any:
    inner = outer.get("orchestration_result")
    if isinstance(inner, dict):
        return _first_choice_content(inner.get("choices"))
    return None


def _module_results(outer: Dict[str, Any]) -> Any:
    modules = outer.get("module_results")
    if isinstance(modules, dict) and isinstance(modules.get("llm"), dict):
        return _first_choice_content(modules["llm"].get("choices"))
    return None


def _chat_completion(outer: Dict[str, Any]) -> Any:
    return _first_choice_content(outer.get("choices"))


# (tag, content extractor); the first extractor returning a non-None
# content wins.
ENVELOPES: List[Tuple[str, Callable[[Dict[str, Any]], Any]]] = [
    ("orchestration_result", _orchestration_result),
    ("module_results", _module_results),
    ("chat_completion", _chat_completion),
]


def is_flat_object(obj: Any) -> bool:
    return isinstance(obj, dict) and any(k in obj for k in FLAT_KEYS)


def resolve_envelope(outer: Dict[str, Any]) -> Tuple[Optional[str], Any]:
    """Return ``(tag, content)`` for the first envelope that matches."""
    for tag, extract in ENVELOPES:
        content = extract(outer)
        if content is not None:
            return tag, content
    if is_flat_object(outer):
        return "flat", outer
    return None, None


# ---------------------------------------------------------------------------
# Content decoding
# ---------------------------------------------------------------------------
def strip_code_fences(s: str) -> str:
    """Remove ```json / ``` fence markers anywhere in ``s``."""
    cleaned = _FENCE_OPEN.sub("", s)
    return cleaned.replace("```", "").strip()


def _balanced_json(s: str, start: int) -> Optional[str]:
    """Return the balanced ``{...}`` span opening at ``s[start]`` or None."""
    depth = 1
    in_str = False
    esc = False
    for i in range(start + 1, len(s)):
        ch = s[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return s[start : i + 1]
    return None


def _loads_object(s: str) -> Dict[str, Any]:
    try:
        value = json.loads(s)
    except (TypeError, ValueError, RecursionError):
        return {}
    return value if isinstance(value, dict) else {}


def scan_for_object(text: str) -> Dict[str, Any]:
    """Find a JSON object embedded in free text.

    The greedy first-to-last brace span is tried first.  After that every
    ``{`` (up to ``_MAX_SCAN_STARTS`` of them) is tried as the start of a
    balanced object, so a placeholder such as ``{ONE_OF_9}`` ahead of the
    real answer does not hide it.
    """
    match = _FIRST_OBJECT.search(text)
    if match:
        found = _loads_object(match.group(0))
        if found:
            return found
    start = text.find("{")
    for _ in range(_MAX_SCAN_STARTS):
        if start < 0:
            break
        candidate = _balanced_json(text, start)
        if candidate:
            found = _loads_object(candidate)
            if found:
                return found
        start = text.find("{", start + 1)
    return {}


def parse_content_string(content: Any) -> Dict[str, Any]:
    """Decode the model's message content (possibly fenced, possibly chatty)."""
    if isinstance(content, dict):
        return content
    if not isinstance(content, str):
        log.debug("content_not_string", extra={"kv": {"type": type(content).__name__}})
        return {}
    cleaned = strip_code_fences(content)
    parsed = _loads_object(cleaned)
    if parsed:
        return parsed
    return scan_for_object(cleaned)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse(raw: Optional[str]) -> Dict[str, Any]:
    """Decode a gateway response into the model's JSON object; ``{}`` on failure."""
    if not raw or not isinstance(raw, str):
        return {}
    try:
        return _parse(raw)
    except Exception as e:
        log.warning("response_parse_error", extra={"kv": {"error": type(e).__name__, "raw": raw[:300]}})
        return {}


def _parse(raw: str) -> Dict[str, Any]:
    try:
        outer = json.loads(raw)
    except (ValueError, RecursionError):
        outer = None

    if isinstance(outer, dict):
        tag, content = resolve_envelope(outer)
        if tag == "flat":
            log.debug("response_shape", extra={"kv": {"shape": tag}})
            return outer
        if tag is not None:
            log.debug("response_shape", extra={"kv": {"shape": tag}})
            return parse_content_string(content)
    elif isinstance(outer, str):
        # A JSON-encoded string: the content itself
        return parse_content_string(outer)

    found = scan_for_object(strip_code_fences(raw))
    if not found:
        log.info("response_unparseable", extra={"kv": {"raw": raw[:300]}})
    return found


def extract_text_content(raw: Optional[str]) -> Optional[str]:
    """Return the first choice's content as text, or the raw text if no envelope matches."""
    if not raw:
        return None
    try:
        outer = json.loads(raw)
    except (ValueError, RecursionError):
        return raw
    if isinstance(outer, dict):
        tag, content = resolve_envelope(outer)
        if tag not in (None, "flat") and isinstance(content, str):
            return content
    return raw


def clean_narrative(text: Optional[str]) -> str:
    """Strip code fences and leading markdown heading markers from free text."""
    if not text:
        return ""
    cleaned = strip_code_fences(text.strip())
    return _HEADING.sub("", cleaned).strip()
