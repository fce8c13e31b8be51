"""SQLModel ORM tables for the generation attempt journal."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class GenerationAttempt(SQLModel, table=True):
    __tablename__ = "generation_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "run_id",
            "task_id",
            "attempt_no",
            name="uq_generation_attempts_run_task_attempt_no",
        ),
        Index("idx_generation_attempts_backend_time", "backend_id", "created_at"),
        Index("idx_generation_attempts_failure_time", "failure_kind", "created_at"),
    )

    attempt_id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    task_id: str
    attempt_no: int
    role: str
    backend_id: str
    status: str
    failure_kind: str | None = None
    duration_ms: int = 0
    output_chars: int = 0
    error_summary_sanitized: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
