from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure

from sitesmith.dispatch.journal import AttemptJournal, AttemptView
from sitesmith.dispatch.metrics import backend_reliability
from sitesmith.dispatch.models import AttemptEvent, AttemptStatus, FailureKind, Role

pytestmark = [
    allure.epic("Observability"),
    allure.feature("Attempt Journal"),
]


def _event(
    task_id: str,
    attempt_no: int,
    backend_id: str,
    status: AttemptStatus,
    kind: FailureKind | None = None,
    duration_ms: int = 100,
) -> AttemptEvent:
    return AttemptEvent(
        task_id=task_id,
        attempt_no=attempt_no,
        role=Role.BULK,
        backend_id=backend_id,
        status=status,
        failure_kind=kind,
        duration_ms=duration_ms,
        output_chars=42,
        error_summary="HTTP 429" if kind else None,
    )


def _view(backend_id: str, status: AttemptStatus, duration_ms: int, kind: str | None = None):
    return AttemptView(
        run_id="r1",
        task_id="t",
        attempt_no=1,
        role="bulk",
        backend_id=backend_id,
        status=status.value,
        failure_kind=kind,
        duration_ms=duration_ms,
        output_chars=0,
        error_summary=None,
        created_at=datetime(2026, 10, 18, tzinfo=UTC),
    )


def test_schema_is_migrated_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "journal.db"
    journal = AttemptJournal(db_path)
    journal.init_schema()
    journal.close()

    with sqlite3.connect(db_path) as connection:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }

    assert version == ("20261018_0001",)
    assert "generation_attempts" in tables


def test_record_and_list_attempts_by_run(tmp_path: Path) -> None:
    db_path = tmp_path / "journal.db"
    first = AttemptJournal(db_path, run_id="run-1")
    first.init_schema()
    second = AttemptJournal(db_path, run_id="run-2")
    try:
        first.record(_event("page:a", 1, "x", AttemptStatus.FAILED, FailureKind.RATE_LIMITED))
        first.record(_event("page:a", 2, "y", AttemptStatus.SUCCEEDED))
        second.record(_event("page:a", 1, "x", AttemptStatus.SUCCEEDED))

        run_one = first.list_attempts(run_id="run-1")
        everything = first.list_attempts()
        recent = first.list_attempts(since=datetime.now(tz=UTC) - timedelta(hours=1), limit=2)
    finally:
        first.close()
        second.close()

    assert [(row.attempt_no, row.backend_id, row.status) for row in run_one] == [
        (1, "x", "failed"),
        (2, "y", "succeeded"),
    ]
    assert run_one[0].failure_kind == "rate_limited"
    assert run_one[0].error_summary == "HTTP 429"
    assert run_one[0].created_at.tzinfo is not None
    assert len(everything) == 3
    assert len(recent) == 2


def test_backend_reliability_aggregates_per_backend() -> None:
    rows = [
        _view("x", AttemptStatus.SUCCEEDED, 300),
        _view("x", AttemptStatus.SUCCEEDED, 100),
        _view("x", AttemptStatus.FAILED, 50, kind="timeout"),
        _view("x", AttemptStatus.ABANDONED, 10),
        _view("y", AttemptStatus.FAILED, 20, kind="rate_limited"),
    ]

    stats = backend_reliability(rows)

    assert [row.backend_id for row in stats] == ["x", "y"]
    x_stats = stats[0]
    assert (x_stats.succeeded, x_stats.failed, x_stats.abandoned) == (2, 1, 1)
    assert x_stats.success_ratio == 2 / 3
    assert x_stats.p50_duration_ms == 100
    assert x_stats.failure_kinds == {"timeout": 1}
    assert stats[1].success_ratio == 0.0
    assert stats[1].p50_duration_ms is None
