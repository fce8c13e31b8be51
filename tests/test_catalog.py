from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import allure
import httpx
import pytest

from sitesmith.config import GatewaySettings
from sitesmith.dispatch.catalog import BackendCatalog, build_descriptors, is_zero_cost
from sitesmith.dispatch.errors import CatalogUnavailableError, GatewayError
from sitesmith.dispatch.gateway import OpenRouterGateway
from sitesmith.dispatch.models import Tier

pytestmark = [
    allure.epic("Backend Catalog"),
    allure.feature("Listing Cache"),
]

_ROWS: list[dict[str, Any]] = [
    {
        "id": "qwen/qwen-2.5-coder-32b-instruct:free",
        "name": "Qwen Coder",
        "context_length": 32_768,
        "pricing": {"prompt": "0", "completion": "0"},
    },
    {
        "id": "deepseek/deepseek-v3",
        "name": "DeepSeek V3",
        "context_length": 65_536,
        "pricing": {"prompt": "0", "completion": "0"},
    },
    {
        "id": "vendor/paid-model",
        "name": "Paid",
        "context_length": 200_000,
        "pricing": {"prompt": "0.000003", "completion": "0.000015"},
    },
    {"id": "mystery/unscored:free", "name": "Mystery", "context_length": 8_192},
    {"id": "mystery/unscored:free", "name": "Duplicate", "context_length": 8_192},
]


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class _ListingSource:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows
        self.calls = 0
        self.fail = False

    def list_backends(self) -> list[dict[str, Any]]:
        self.calls += 1
        if self.fail:
            raise GatewayError(message="listing down")
        return [dict(row) for row in self.rows]


def test_is_zero_cost_by_suffix_or_pricing() -> None:
    assert is_zero_cost({"id": "a/b:free"}) is True
    assert is_zero_cost({"id": "a/b", "pricing": {"prompt": "0", "completion": "0"}}) is True
    assert is_zero_cost({"id": "a/b", "pricing": {"prompt": "0", "completion": "1"}}) is False
    assert is_zero_cost({"id": "a/b"}) is False


def test_build_descriptors_filters_scores_and_orders() -> None:
    descriptors = build_descriptors(
        _ROWS,
        scores={"qwen-2.5-coder-32b-instruct": 0.89, "deepseek-v3": 0.88},
    )

    assert [item.id for item in descriptors] == [
        "qwen/qwen-2.5-coder-32b-instruct:free",
        "deepseek/deepseek-v3",
        "mystery/unscored:free",
    ]
    unscored = descriptors[-1]
    assert unscored.tier is Tier.LOW
    assert unscored.quality_score == 0.0
    assert unscored.display_name == "Mystery"


def test_refresh_uses_fresh_cache_without_fetching(tmp_path: Path) -> None:
    clock = _Clock(datetime(2026, 10, 18, 9, 0, tzinfo=UTC))
    source = _ListingSource(_ROWS)
    path = tmp_path / "catalog.json"
    catalog = BackendCatalog(source=source, path=path, scores={}, clock=clock)

    first = catalog.refresh()
    clock.now += timedelta(hours=1)
    second = catalog.refresh()

    assert source.calls == 1
    assert first == second
    snapshot = json.loads(path.read_text("utf-8"))
    assert snapshot["fetched_at"] == "2026-10-18T09:00:00+00:00"
    assert len(snapshot["backends"]) == 3


def test_refresh_refetches_stale_cache_and_force(tmp_path: Path) -> None:
    clock = _Clock(datetime(2026, 10, 18, 9, 0, tzinfo=UTC))
    source = _ListingSource(_ROWS)
    catalog = BackendCatalog(
        source=source,
        path=tmp_path / "catalog.json",
        scores={},
        max_age_seconds=60,
        clock=clock,
    )

    catalog.refresh()
    clock.now += timedelta(minutes=2)
    catalog.refresh()
    catalog.refresh(force=True)

    assert source.calls == 3


def test_snapshot_survives_restart(tmp_path: Path) -> None:
    clock = _Clock(datetime(2026, 10, 18, 9, 0, tzinfo=UTC))
    path = tmp_path / "catalog.json"
    BackendCatalog(source=_ListingSource(_ROWS), path=path, scores={}, clock=clock).refresh()

    offline = _ListingSource([])
    offline.fail = True
    restarted = BackendCatalog(source=offline, path=path, scores={}, clock=clock)

    descriptors = restarted.refresh()

    assert offline.calls == 0
    assert len(descriptors) == 3
    assert restarted.get("deepseek/deepseek-v3") is not None


def test_stale_cache_is_served_when_listing_fails(tmp_path: Path) -> None:
    clock = _Clock(datetime(2026, 10, 18, 9, 0, tzinfo=UTC))
    source = _ListingSource(_ROWS)
    catalog = BackendCatalog(source=source, path=tmp_path / "c.json", scores={}, clock=clock)
    catalog.refresh()

    source.fail = True
    clock.now += timedelta(days=2)
    descriptors = catalog.refresh()

    assert len(descriptors) == 3
    assert catalog.fetched_at == datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def test_missing_cache_and_failed_listing_raise(tmp_path: Path) -> None:
    source = _ListingSource([])
    source.fail = True
    catalog = BackendCatalog(source=source, path=tmp_path / "none.json", scores={})

    with pytest.raises(CatalogUnavailableError, match="no cache"):
        catalog.refresh()


def test_openrouter_listing_feeds_catalog(tmp_path: Path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"data": _ROWS})

    gateway = OpenRouterGateway(
        GatewaySettings(base_url="https://gateway.test/api/v1"),
        transport=httpx.MockTransport(handler),
    )
    with gateway:
        catalog = BackendCatalog(source=gateway, path=tmp_path / "c.json", scores={})
        descriptors = catalog.refresh()

    assert seen == ["/api/v1/models"]
    assert len(descriptors) == 3


def test_openrouter_listing_error_is_gateway_error() -> None:
    gateway = OpenRouterGateway(
        GatewaySettings(base_url="https://gateway.test/api/v1"),
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down")),
    )

    with gateway, pytest.raises(GatewayError, match="Backend listing failed"):
        gateway.list_backends()
