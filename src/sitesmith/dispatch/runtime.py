"""Wiring of gateway, catalog, ledger, journal and coordinator for one process."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace

from sitesmith.config import Settings
from sitesmith.dispatch.catalog import BackendCatalog
from sitesmith.dispatch.coordinator import PipelineCoordinator
from sitesmith.dispatch.dispatcher import Dispatcher
from sitesmith.dispatch.gateway import OpenRouterGateway, ScriptedGateway
from sitesmith.dispatch.gateway.scripted import OFFLINE_SCORES
from sitesmith.dispatch.journal import AttemptJournal
from sitesmith.dispatch.roles import RoleResolver
from sitesmith.dispatch.scores import load_scores
from sitesmith.dispatch.trust import TrustLedger

logger = logging.getLogger(__name__)

OFFLINE_CACHE_SUBDIR = "offline"


@dataclass(slots=True)
class PipelineRuntime:
    """Everything a generation run needs, bound to one settings object."""

    settings: Settings
    gateway: ScriptedGateway | OpenRouterGateway
    catalog: BackendCatalog
    ledger: TrustLedger
    resolver: RoleResolver
    journal: AttemptJournal
    dispatcher: Dispatcher
    coordinator: PipelineCoordinator


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    offline: bool = False,
    gateway: ScriptedGateway | OpenRouterGateway | None = None,
) -> Iterator[PipelineRuntime]:
    """Build a runtime and release its gateway and journal on exit.

    ``offline`` swaps the HTTP gateway for the deterministic scripted one
    and keeps its catalog and ledger snapshots in a separate cache folder.
    """

    settings.validate()
    catalog_settings = settings.catalog
    if offline:
        catalog_settings = replace(
            catalog_settings,
            cache_dir=catalog_settings.cache_dir / OFFLINE_CACHE_SUBDIR,
        )
        scores = dict(OFFLINE_SCORES)
    else:
        scores = load_scores(catalog_settings.scores_path)

    owned: OpenRouterGateway | None = None
    if gateway is None:
        if offline:
            gateway = ScriptedGateway()
        else:
            owned = OpenRouterGateway(settings.gateway)
            gateway = owned

    journal = AttemptJournal(settings.db_path)
    journal.init_schema()
    try:
        catalog = BackendCatalog(
            source=gateway,
            path=catalog_settings.catalog_path,
            scores=scores,
            max_age_seconds=catalog_settings.max_age_seconds,
        )
        ledger = TrustLedger(catalog_settings.ledger_path)
        resolver = RoleResolver(
            catalog=catalog,
            ledger=ledger,
            fallback_bulk_ids=catalog_settings.fallback_bulk_ids,
        )
        dispatcher = Dispatcher(
            gateway=gateway,
            resolver=resolver,
            ledger=ledger,
            settings=settings.dispatch,
            gateway_settings=settings.gateway,
            journal=journal,
        )
        coordinator = PipelineCoordinator(
            catalog=catalog,
            resolver=resolver,
            dispatcher=dispatcher,
            settings=settings,
        )
        logger.debug("Runtime ready: run_id=%s offline=%s", journal.run_id, offline)
        yield PipelineRuntime(
            settings=settings,
            gateway=gateway,
            catalog=catalog,
            ledger=ledger,
            resolver=resolver,
            journal=journal,
            dispatcher=dispatcher,
            coordinator=coordinator,
        )
    finally:
        journal.close()
        if owned is not None:
            owned.close()
