"""Redaction of gateway error text before it reaches logs or the attempt journal."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_PREVIEW_CHARS = 1_000
_TRUNCATION_MARK = " [truncated]"

_Replacement = str | Callable[[re.Match[str]], str]

# Order matters: provider keys must be replaced before the generic key=value rule.
_RULES: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"), r"\1 [redacted-token]"),
    (re.compile(r"(?i)\bsk-(?:or-v\d+-)?[a-z0-9\-]{8,}"), "[redacted-token]"),
    (
        re.compile(
            r"(?i)\b(?:sitesmith|openrouter|openai|anthropic|mistral)"
            r"[a-z0-9_]*?_?(?:api_)?(?:key|token)"
            r"\s*[:=]\s*['\"]?[^'\"\s]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:api_key|token|key|signature|auth))=[^&\s]+"),
        lambda match: f"{match.group(1)}=[redacted]",
    ),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[redacted-email]"),
)


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact bearer tokens, API keys and e-mail addresses, then clamp length."""

    redacted = text.strip()
    if not redacted:
        return ""
    for pattern, replacement in _RULES:
        redacted = pattern.sub(replacement, redacted)
    if len(redacted) <= max_chars:
        return redacted
    return redacted[: max(0, max_chars - len(_TRUNCATION_MARK))] + _TRUNCATION_MARK
