"""Recover a structured JSON document from raw backend text."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from enum import Enum
from typing import Any

from sitesmith.dispatch.errors import MalformedOutputError
from sitesmith.dispatch.models import RepairResult

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)
_WIDEST_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_PREVIEW_CHARS = 200
_CLOSERS = {"{": "}", "[": "]"}


class _ScanState(Enum):
    NORMAL = "normal"
    IN_STRING = "in_string"
    ESCAPED = "escaped"


def repair_response(raw: str) -> RepairResult:
    """Run the repair chain and return the first document that parses.

    Steps: direct parse, balanced scan, fenced block, widest object. Each step
    runs only when the previous one fails.
    """

    steps: tuple[tuple[str, Callable[[str], Any]], ...] = (
        ("direct", json.loads),
        ("balanced_scan", _parse_scanned),
        ("fenced_block", _parse_fenced),
        ("widest_object", _parse_widest_object),
    )
    for name, step in steps:
        try:
            document = step(raw)
        except ValueError:
            continue
        if name != "direct":
            logger.debug("Recovered backend output via %s", name)
        return RepairResult(document=document, strategy=name)

    preview = raw.strip()[:_PREVIEW_CHARS]
    raise MalformedOutputError(
        message=f"Unrecoverable backend output ({len(raw)} chars)",
        preview=preview,
    )


def extract_balanced(text: str) -> str:
    """Cut the first JSON value out of ``text`` and normalize it for parsing.

    Walks from the first ``{`` or ``[`` tracking string and escape state,
    stops at the matching close and drops trailing commas before closers.
    Text that ends before the matching close is rejected.
    """

    start = _first_opener(text)
    if start < 0:
        raise ValueError("No JSON object or array in text.")

    out: list[str] = []
    stack: list[str] = []
    state = _ScanState.NORMAL
    pending_comma = ""

    for char in text[start:]:
        if state is _ScanState.ESCAPED:
            out.append(char)
            state = _ScanState.IN_STRING
            continue
        if state is _ScanState.IN_STRING:
            out.append(char)
            if char == "\\":
                state = _ScanState.ESCAPED
            elif char == '"':
                state = _ScanState.NORMAL
            continue

        if pending_comma:
            if char.isspace():
                pending_comma += char
                continue
            if char not in "}]":
                out.append(pending_comma)
            pending_comma = ""

        if char == ",":
            pending_comma = char
            continue
        out.append(char)
        if char == '"':
            state = _ScanState.IN_STRING
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in "}]":
            if not stack or stack[-1] != char:
                raise ValueError("Unbalanced JSON closer.")
            stack.pop()
            if not stack:
                return "".join(out)

    raise ValueError(f"Unterminated JSON value ({len(stack)} open containers).")


def _parse_scanned(text: str) -> Any:
    return json.loads(extract_balanced(text))


def _parse_fenced(text: str) -> Any:
    for match in _FENCE_RE.finditer(text):
        inner = match.group(1)
        try:
            return json.loads(inner)
        except ValueError:
            pass
        try:
            return _parse_scanned(inner)
        except ValueError:
            continue
    raise ValueError("No parseable fenced block.")


def _parse_widest_object(text: str) -> Any:
    match = _WIDEST_OBJECT_RE.search(text)
    if match is None:
        raise ValueError("No object-shaped substring.")
    return _parse_scanned(match.group(0))


def _first_opener(text: str) -> int:
    positions = [index for index in (text.find("{"), text.find("[")) if index >= 0]
    return min(positions) if positions else -1
