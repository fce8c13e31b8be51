"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from sitesmith.config import CatalogSettings, DispatchSettings, Settings
from sitesmith.dispatch.catalog import BackendCatalog
from sitesmith.dispatch.gateway import ScriptedGateway
from sitesmith.dispatch.gateway.scripted import OFFLINE_SCORES
from sitesmith.dispatch.models import AttemptEvent, Role
from sitesmith.dispatch.trust import TrustLedger

VALID_PAGE_BODY = (
    "<main><h1>Menu</h1><section><h2>Breads</h2><p>"
    + "Sourdough, rye and seeded loaves baked every morning. " * 6
    + "</p></section></main>"
)


def valid_answer(path: str = "menu.html") -> str:
    return json.dumps({"files": {path: VALID_PAGE_BODY}, "entry": path})


class StaticResolver:
    """Resolver returning fixed backend lists per role."""

    def __init__(self, roles: Mapping[Role, Sequence[str]]) -> None:
        self._roles = {role: list(ids) for role, ids in roles.items()}

    def resolve(self, role: Role) -> list[str]:
        return list(self._roles.get(role, []))


class RecordingSink:
    """Attempt sink keeping events in memory."""

    def __init__(self) -> None:
        self.events: list[AttemptEvent] = []

    def record(self, event: AttemptEvent) -> None:
        self.events.append(event)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep every test away from real credentials and the working directory cache."""

    for name in ("SITESMITH_API_KEY", "OPENROUTER_API_KEY", "SITESMITH_SCORES_PATH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SITESMITH_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("SITESMITH_DB_PATH", str(tmp_path / "sitesmith.db"))


@pytest.fixture()
def ledger(tmp_path: Path) -> TrustLedger:
    return TrustLedger(tmp_path / "trust.json")


@pytest.fixture()
def offline_catalog(tmp_path: Path) -> BackendCatalog:
    catalog = BackendCatalog(
        source=ScriptedGateway(),
        path=tmp_path / "catalog.json",
        scores=OFFLINE_SCORES,
    )
    catalog.refresh()
    return catalog


@pytest.fixture()
def fast_dispatch_settings() -> DispatchSettings:
    return DispatchSettings(
        concurrency_limit=3,
        max_attempts_per_task=3,
        attempt_timeout_seconds=5.0,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
    )


@pytest.fixture()
def settings(tmp_path: Path, fast_dispatch_settings: DispatchSettings) -> Settings:
    return Settings(
        db_path=tmp_path / "sitesmith.db",
        catalog=CatalogSettings(cache_dir=tmp_path / "cache"),
        dispatch=fast_dispatch_settings,
    )
