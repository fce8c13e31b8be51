"""Prefect entry point for one site generation run.

The flow body only wires settings to the runtime and writes the result;
concurrency, retries and validation live in the coordinator and dispatcher.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from prefect import flow

from sitesmith.config import Settings
from sitesmith.dispatch.assembly import write_site
from sitesmith.dispatch.coordinator import PipelineResult
from sitesmith.dispatch.gateway import OpenRouterGateway, ScriptedGateway
from sitesmith.dispatch.runtime import open_runtime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GenerationReport:
    """Pipeline result plus where its files were written."""

    run_id: str
    result: PipelineResult
    written: list[Path] = field(default_factory=list)


def generate_site(
    *,
    brief: str,
    out_dir: Path,
    settings: Settings,
    offline: bool = False,
    gateway: ScriptedGateway | OpenRouterGateway | None = None,
    cancel_event: threading.Event | None = None,
) -> GenerationReport:
    """Run the coordinator for ``brief``; files are written only on success."""

    with open_runtime(settings, offline=offline, gateway=gateway) as runtime:
        run_id = runtime.journal.run_id
        result = runtime.coordinator.run(brief, cancel_event=cancel_event)

    report = GenerationReport(run_id=run_id, result=result)
    if result.ok:
        report.written = write_site(out_dir, result.files)
        logger.info("Run %s wrote %d files to %s", run_id, len(report.written), out_dir)
    else:
        logger.warning("Run %s produced no site: %s", run_id, result.summary())
    return report


@flow(name="site_generation_flow")
def site_generation_flow(
    *,
    brief: str,
    out_dir: Path,
    db_path: Path | None = None,
    offline: bool = False,
) -> GenerationReport:
    """Generate one static site as a Prefect flow run."""

    settings = Settings.from_env(db_path=db_path)
    return generate_site(brief=brief, out_dir=out_dir, settings=settings, offline=offline)
