"""Create per-attempt generation journal table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_attempts",
        sa.Column("attempt_id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("backend_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_kind", sa.String(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("output_chars", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_summary_sanitized", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("attempt_id"),
        sa.UniqueConstraint(
            "run_id",
            "task_id",
            "attempt_no",
            name="uq_generation_attempts_run_task_attempt_no",
        ),
    )
    op.create_index(
        "ix_generation_attempts_run_id",
        "generation_attempts",
        ["run_id"],
        unique=False,
    )
    op.create_index(
        "idx_generation_attempts_backend_time",
        "generation_attempts",
        ["backend_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_generation_attempts_failure_time",
        "generation_attempts",
        ["failure_kind", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_generation_attempts_failure_time", table_name="generation_attempts")
    op.drop_index("idx_generation_attempts_backend_time", table_name="generation_attempts")
    op.drop_index("ix_generation_attempts_run_id", table_name="generation_attempts")
    op.drop_table("generation_attempts")
