"""Controllers for catalog, generation and reliability CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from sitesmith.config import Settings
from sitesmith.dispatch.coordinator import PipelineResult
from sitesmith.dispatch.flows import generate_site
from sitesmith.dispatch.journal import AttemptJournal
from sitesmith.dispatch.metrics import backend_reliability
from sitesmith.dispatch.models import Role
from sitesmith.dispatch.runtime import open_runtime


@dataclass(slots=True)
class ModelsSyncCommand:
    """CLI input for a catalog refresh."""

    db_path: Path | None
    force: bool
    offline: bool


@dataclass(slots=True)
class RolesCommand:
    """CLI input for role resolution preview."""

    db_path: Path | None
    offline: bool
    refresh: bool = True


@dataclass(slots=True)
class TrustCommand:
    """CLI input for trust ledger listing."""

    db_path: Path | None
    offline: bool


@dataclass(slots=True)
class GenerateCommand:
    """CLI input for one site generation run."""

    brief: str
    out_dir: Path
    db_path: Path | None
    offline: bool
    concurrency: int | None = None
    max_attempts: int | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class StatsCommand:
    """CLI input for per-backend reliability stats."""

    db_path: Path | None
    hours: int
    run_id: str | None = None


@dataclass(slots=True)
class GenerateResult:
    success: bool
    lines: list[str] = field(default_factory=list)
    run_id: str | None = None


class SiteCliController:
    """Coordinates catalog, trust, generation and stats CLI operations."""

    def models_sync(self, command: ModelsSyncCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings, offline=command.offline) as runtime:
            descriptors = runtime.catalog.refresh(force=command.force)
            fetched_at = runtime.catalog.fetched_at

        lines = [
            f"Catalog: {len(descriptors)} zero-cost backends "
            f"(fetched_at={fetched_at.isoformat() if fetched_at else 'never'})",
        ]
        lines.extend(
            f"- {item.id} tier={item.tier.value} score={item.quality_score:.2f} "
            f"context={item.context_limit}"
            for item in descriptors
        )
        return lines

    def roles(self, command: RolesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings, offline=command.offline) as runtime:
            if command.refresh:
                runtime.catalog.refresh()
            assignments = [runtime.resolver.assignment(role) for role in Role]

        lines = ["Role assignments:"]
        for assignment in assignments:
            ordered = ", ".join(assignment.ordered_backend_ids) or "(none)"
            lines.append(f"- {assignment.role.value}: {ordered}")
        return lines

    def trust(self, command: TrustCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings, offline=command.offline) as runtime:
            records = runtime.ledger.records()

        if not records:
            return ["Trust ledger is empty."]
        lines = [f"Trust ledger: {len(records)} backends"]
        lines.extend(
            f"- {record.backend_id} trusted={'yes' if record.trusted else 'no'} "
            f"success={record.success_count} failure={record.failure_count} "
            f"updated={record.last_updated.isoformat()}"
            for record in records
        )
        return lines

    def generate(self, command: GenerateCommand) -> GenerateResult:
        """Run the pipeline for one brief and write the artifact set to disk."""

        settings = Settings.from_env(db_path=command.db_path)
        if command.concurrency is not None:
            settings.dispatch.concurrency_limit = command.concurrency
        if command.max_attempts is not None:
            settings.dispatch.max_attempts_per_task = command.max_attempts
        if command.timeout_seconds is not None:
            settings.dispatch.pipeline_timeout_seconds = command.timeout_seconds

        report = generate_site(
            brief=command.brief,
            out_dir=command.out_dir,
            settings=settings,
            offline=command.offline,
        )
        result = report.result
        lines = [f"Run {report.run_id}: {result.summary()}"]
        lines.extend(_failure_lines(result))
        if result.warnings:
            lines.append(f"Validation warnings: {len(result.warnings)}")
            lines.extend(f"  {warning}" for warning in result.warnings)
        if result.ok:
            lines.append(f"Wrote {len(report.written)} files to {command.out_dir}")
        return GenerateResult(success=result.ok, lines=lines, run_id=report.run_id)

    def stats(self, command: StatsCommand) -> list[str]:
        """Show per-backend attempt reliability for a time window or one run."""

        settings = Settings.from_env(db_path=command.db_path)
        since = None
        if command.run_id is None:
            since = datetime.now(tz=UTC) - timedelta(hours=max(1, command.hours))
        with _journal(settings) as journal:
            attempts = journal.list_attempts(run_id=command.run_id, since=since)

        scope = f"run {command.run_id}" if command.run_id else f"last {command.hours}h"
        if not attempts:
            return [f"No attempts recorded ({scope})."]
        lines = [f"Attempts ({scope}): {len(attempts)}"]
        for row in backend_reliability(attempts):
            ratio = row.success_ratio
            kinds = ",".join(f"{kind}:{count}" for kind, count in row.failure_kinds.items())
            lines.append(
                f"- {row.backend_id} attempts={row.attempts} succeeded={row.succeeded} "
                f"failed={row.failed} abandoned={row.abandoned} "
                f"success={'n/a' if ratio is None else f'{ratio:.0%}'} "
                f"p50_ms={row.p50_duration_ms if row.p50_duration_ms is not None else 'n/a'} "
                f"failures={kinds or '-'}",
            )
        return lines


def _failure_lines(result: PipelineResult) -> list[str]:
    return [f"Failed {task_id}: {message}" for task_id, message in sorted(result.failures.items())]


@contextmanager
def _journal(settings: Settings) -> Iterator[AttemptJournal]:
    journal = AttemptJournal(settings.db_path)
    journal.init_schema()
    try:
        yield journal
    finally:
        journal.close()
