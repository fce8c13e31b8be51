"""SQLite attempt journal backed by SQLModel."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlmodel import Session, col, select

from sitesmith.dispatch.models import AttemptEvent
from sitesmith.storage.alembic_runner import upgrade_head
from sitesmith.storage.common import build_sqlite_engine, from_iso, utc_now
from sitesmith.storage.sqlmodel_models import GenerationAttempt

DEFAULT_BUSY_TIMEOUT_MS = 5_000


@dataclass(slots=True)
class AttemptView:
    """Readable journal row for stats and CLI output."""

    run_id: str
    task_id: str
    attempt_no: int
    role: str
    backend_id: str
    status: str
    failure_kind: str | None
    duration_ms: int
    output_chars: int
    error_summary: str | None
    created_at: datetime


class AttemptJournal:
    """Append-only per-attempt telemetry for one or more pipeline runs."""

    def __init__(
        self,
        db_path: Path,
        *,
        run_id: str | None = None,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.run_id = run_id or str(uuid4())
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._write_lock = threading.Lock()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def record(self, event: AttemptEvent) -> None:
        """Append one attempt row; concurrent dispatch workers are serialized."""

        row = GenerationAttempt(
            run_id=self.run_id,
            task_id=event.task_id,
            attempt_no=event.attempt_no,
            role=event.role.value,
            backend_id=event.backend_id,
            status=event.status.value,
            failure_kind=event.failure_kind.value if event.failure_kind else None,
            duration_ms=event.duration_ms,
            output_chars=event.output_chars,
            error_summary_sanitized=event.error_summary,
            created_at=utc_now(),
        )
        with self._write_lock, Session(self.engine) as session:
            session.add(row)
            session.commit()

    def list_attempts(
        self,
        *,
        run_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AttemptView]:
        """Journal rows ordered oldest first, optionally filtered by run and time."""

        statement = select(GenerationAttempt)
        if run_id is not None:
            statement = statement.where(col(GenerationAttempt.run_id) == run_id)
        if since is not None:
            statement = statement.where(col(GenerationAttempt.created_at) >= since)
        statement = statement.order_by(
            col(GenerationAttempt.created_at),
            col(GenerationAttempt.attempt_id),
        )
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_view(row) for row in rows]


def _to_view(row: GenerationAttempt) -> AttemptView:
    created_at = row.created_at
    if isinstance(created_at, str):
        created_at = from_iso(created_at)
    elif created_at.tzinfo is None:
        created_at = from_iso(created_at.isoformat())
    return AttemptView(
        run_id=row.run_id,
        task_id=row.task_id,
        attempt_no=row.attempt_no,
        role=row.role,
        backend_id=row.backend_id,
        status=row.status,
        failure_kind=row.failure_kind,
        duration_ms=row.duration_ms,
        output_chars=row.output_chars,
        error_summary=row.error_summary_sanitized,
        created_at=created_at,
    )
