"""Deterministic gateway failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from sitesmith.dispatch.models import FailureKind

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate-limited",
    "quota",
    "resource_exhausted",
    "please retry",
    "try again later",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "no auth credentials",
    "authentication",
)
_EMPTY_PATTERNS: tuple[str, ...] = (
    "empty response",
    "no choices",
    "no content",
)
_TRANSPORT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "provider returned error",
    "upstream",
    "overloaded",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_details(self, *, backend_id: str) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and journal rows."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "backend_id": backend_id,
            "kind": self.kind.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_http_failure(*, status_code: int, body: str) -> FailureClassification:
    """Classify a non-success gateway response by status, then by body text."""

    if status_code == 429:
        return FailureClassification(
            kind=FailureKind.RATE_LIMITED,
            reason_code="http_429",
            matched_rule="status_rate_limited",
            matched_pattern=None,
        )
    if status_code in {401, 403}:
        return FailureClassification(
            kind=FailureKind.AUTH,
            reason_code=f"http_{status_code}",
            matched_rule="status_auth",
            matched_pattern=None,
        )
    if status_code in {408, 504}:
        return FailureClassification(
            kind=FailureKind.TIMEOUT,
            reason_code=f"http_{status_code}",
            matched_rule="status_timeout",
            matched_pattern=None,
        )
    text_result = classify_error_text(body)
    if text_result.matched_pattern is not None:
        return text_result
    return FailureClassification(
        kind=FailureKind.TRANSPORT,
        reason_code=f"http_{status_code}",
        matched_rule="status_fallback_transport",
        matched_pattern=None,
    )


def classify_error_text(text: str) -> FailureClassification:
    """Classify free-form error text; unknown text is treated as transport failure."""

    haystack = text.lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.RATE_LIMITED,
            reason_code="text_rate_limited",
            matched_rule="rate_limited",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.AUTH,
            reason_code="text_auth",
            matched_rule="auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _EMPTY_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.EMPTY_RESPONSE,
            reason_code="text_empty_response",
            matched_rule="empty_response",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSPORT_PATTERNS)
    return FailureClassification(
        kind=FailureKind.TRANSPORT,
        reason_code="text_transport",
        matched_rule="transport" if pattern is not None else "fallback_transport",
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
