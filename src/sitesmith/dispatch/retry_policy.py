"""Retry/backoff/substitution decisions for failed attempts."""

from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass
from enum import Enum

from sitesmith.dispatch.models import FailureKind


class RetryAction(str, Enum):
    """What the dispatcher does after a failed attempt."""

    RETRY_SAME = "retry_same"
    SUBSTITUTE = "substitute"
    FAIL = "fail"


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by retry policy."""

    action: RetryAction
    backend_id: str | None
    backoff_seconds: float
    reason: str


def backoff_delay(streak: int, *, base_seconds: float, max_seconds: float) -> float:
    """Exponential delay for the ``streak``-th consecutive rate limit, capped."""

    if streak <= 0:
        return 0.0
    return min(max_seconds, base_seconds * 2 ** (streak - 1))


def decide_retry(  # noqa: PLR0913
    *,
    attempts_used: int,
    max_attempts: int,
    failure_kind: FailureKind,
    current_backend: str,
    candidates: Sequence[str],
    attempted: Collection[str],
    rate_limit_streak: int,
    rate_limit_switch_after: int,
    backoff_base_seconds: float,
    backoff_max_seconds: float,
) -> RetryDecision:
    """Pick the next action for a task whose attempt just failed.

    Rate-limited tasks wait and stay on the same backend until the streak
    reaches ``rate_limit_switch_after``; every other failure substitutes.
    """

    if attempts_used >= max_attempts:
        return RetryDecision(
            action=RetryAction.FAIL,
            backend_id=None,
            backoff_seconds=0.0,
            reason=f"Attempt budget of {max_attempts} exhausted.",
        )

    if failure_kind is FailureKind.RATE_LIMITED and rate_limit_streak < rate_limit_switch_after:
        return RetryDecision(
            action=RetryAction.RETRY_SAME,
            backend_id=current_backend,
            backoff_seconds=backoff_delay(
                rate_limit_streak,
                base_seconds=backoff_base_seconds,
                max_seconds=backoff_max_seconds,
            ),
            reason=f"Rate limited ({rate_limit_streak} in a row), backing off.",
        )

    substitute = next_backend(
        current_backend=current_backend,
        candidates=candidates,
        attempted=attempted,
    )
    if substitute is None:
        return RetryDecision(
            action=RetryAction.FAIL,
            backend_id=None,
            backoff_seconds=0.0,
            reason="No alternative backend available.",
        )
    category = "transport" if failure_kind.is_transport else "content"
    return RetryDecision(
        action=RetryAction.SUBSTITUTE,
        backend_id=substitute,
        backoff_seconds=0.0,
        reason=(
            f"{category} failure ({failure_kind.value}) on {current_backend}, "
            f"substituting {substitute}."
        ),
    )


def next_backend(
    *,
    current_backend: str,
    candidates: Sequence[str],
    attempted: Collection[str],
) -> str | None:
    """Next candidate after ``current_backend``; untried backends come first."""

    ordered = list(candidates)
    others = [backend_id for backend_id in ordered if backend_id != current_backend]
    if not others:
        return None
    if current_backend in ordered:
        start = ordered.index(current_backend)
        rotated = [
            backend_id
            for backend_id in ordered[start + 1 :] + ordered[:start]
            if backend_id != current_backend
        ]
    else:
        rotated = others
    for backend_id in rotated:
        if backend_id not in attempted:
            return backend_id
    return rotated[0]
