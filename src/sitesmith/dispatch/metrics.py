"""Per-backend reliability metrics computed from journal rows."""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass

from sitesmith.dispatch.journal import AttemptView
from sitesmith.dispatch.models import AttemptStatus


@dataclass(slots=True)
class BackendReliability:
    """Attempt outcomes for one backend."""

    backend_id: str
    attempts: int
    succeeded: int
    failed: int
    abandoned: int
    failure_kinds: dict[str, int]
    p50_duration_ms: int | None

    @property
    def success_ratio(self) -> float | None:
        """Share of completed attempts that succeeded; abandoned ones are ignored."""

        completed = self.succeeded + self.failed
        if completed == 0:
            return None
        return self.succeeded / completed


def backend_reliability(attempts: Iterable[AttemptView]) -> list[BackendReliability]:
    """Aggregate attempts per backend, most used backend first."""

    grouped: dict[str, list[AttemptView]] = defaultdict(list)
    for attempt in attempts:
        grouped[attempt.backend_id].append(attempt)

    rows: list[BackendReliability] = []
    for backend_id, items in grouped.items():
        statuses = Counter(item.status for item in items)
        kinds = Counter(item.failure_kind for item in items if item.failure_kind)
        durations = sorted(
            item.duration_ms for item in items if item.status == AttemptStatus.SUCCEEDED.value
        )
        rows.append(
            BackendReliability(
                backend_id=backend_id,
                attempts=len(items),
                succeeded=statuses[AttemptStatus.SUCCEEDED.value],
                failed=statuses[AttemptStatus.FAILED.value],
                abandoned=statuses[AttemptStatus.ABANDONED.value],
                failure_kinds=dict(sorted(kinds.items())),
                p50_duration_ms=_median(durations),
            ),
        )
    rows.sort(key=lambda row: (-row.attempts, row.backend_id))
    return rows


def _median(values: list[int]) -> int | None:
    if not values:
        return None
    return values[(len(values) - 1) // 2]
