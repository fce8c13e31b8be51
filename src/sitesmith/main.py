"""CLI entrypoint for sitesmith."""

import logging
from pathlib import Path

import rich_click as click

from sitesmith import __version__
from sitesmith.dispatch.controllers import (
    GenerateCommand,
    ModelsSyncCommand,
    RolesCommand,
    SiteCliController,
    StatsCommand,
    TrustCommand,
)

click.rich_click.USE_MARKDOWN = True
SITE_CONTROLLER = SiteCliController()


@click.group()
@click.version_option(version=__version__, prog_name="sitesmith")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def sitesmith(verbose: bool) -> None:
    """Static site generation over free inference backends."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@sitesmith.group()
def models() -> None:
    """Backend catalog, role and trust commands."""


@models.command("sync")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--force", is_flag=True, default=False, help="Refetch even if the cache is fresh.")
@click.option("--offline", is_flag=True, default=False, help="Use the built-in offline backends.")
def models_sync(db_path: Path | None, force: bool, offline: bool) -> None:
    """Refresh the zero-cost backend catalog and print its tiers."""

    _emit_lines(
        SITE_CONTROLLER.models_sync(
            ModelsSyncCommand(db_path=db_path, force=force, offline=offline),
        ),
    )


@models.command("roles")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--offline", is_flag=True, default=False, help="Use the built-in offline backends.")
def models_roles(db_path: Path | None, offline: bool) -> None:
    """Show the ordered backend list for every role."""

    _emit_lines(SITE_CONTROLLER.roles(RolesCommand(db_path=db_path, offline=offline)))


@models.command("trust")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--offline", is_flag=True, default=False, help="Use the built-in offline backends.")
def models_trust(db_path: Path | None, offline: bool) -> None:
    """Show the persisted trust ledger."""

    _emit_lines(SITE_CONTROLLER.trust(TrustCommand(db_path=db_path, offline=offline)))


@sitesmith.command("generate")
@click.argument("brief")
@click.option(
    "--out",
    "out_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("site"),
    show_default=True,
    help="Folder the generated site is written to.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--offline",
    is_flag=True,
    default=False,
    help="Generate with the deterministic offline gateway; no network access.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum in-flight gateway calls. Defaults to SITESMITH_CONCURRENCY.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempt budget per task. Defaults to SITESMITH_MAX_ATTEMPTS.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Whole-run deadline in seconds; 0 disables it.",
)
def generate(  # noqa: PLR0913
    brief: str,
    out_dir: Path,
    db_path: Path | None,
    offline: bool,
    concurrency: int | None,
    max_attempts: int | None,
    timeout_seconds: float | None,
) -> None:
    """Generate a static site from a free-text BRIEF."""

    result = SITE_CONTROLLER.generate(
        GenerateCommand(
            brief=brief,
            out_dir=out_dir,
            db_path=db_path,
            offline=offline,
            concurrency=concurrency,
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Site generation failed.")


@sitesmith.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
@click.option("--run-id", default=None, help="Limit stats to one generation run.")
def stats(db_path: Path | None, hours: int, run_id: str | None) -> None:
    """Show per-backend reliability from the attempt journal."""

    _emit_lines(SITE_CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours, run_id=run_id)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    sitesmith()
