"""Cached catalog of zero-cost generation backends."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from sitesmith.dispatch.errors import CatalogUnavailableError, GatewayError
from sitesmith.dispatch.gateway.base import CatalogSource
from sitesmith.dispatch.models import BackendDescriptor, Tier
from sitesmith.dispatch.scores import ScoredBackend, assign_tiers, match_score
from sitesmith.storage.common import from_iso, read_json, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


def is_zero_cost(row: Mapping[str, Any]) -> bool:
    """Zero-cost when the id carries the ``:free`` suffix or both prices are ``"0"``."""

    if str(row.get("id", "")).endswith(":free"):
        return True
    pricing = row.get("pricing")
    if not isinstance(pricing, Mapping):
        return False
    return str(pricing.get("prompt")) == "0" and str(pricing.get("completion")) == "0"


def build_descriptors(
    rows: list[dict[str, Any]],
    *,
    scores: Mapping[str, float],
) -> list[BackendDescriptor]:
    """Filter listing rows to zero-cost backends, score and tier them."""

    scored: list[ScoredBackend] = []
    seen: set[str] = set()
    for row in rows:
        backend_id = str(row.get("id") or "").strip()
        if not backend_id or backend_id in seen or not is_zero_cost(row):
            continue
        seen.add(backend_id)
        scored.append(
            ScoredBackend(
                id=backend_id,
                display_name=str(row.get("name") or backend_id),
                context_limit=int(row.get("context_length") or 0),
                match=match_score(backend_id, scores),
            ),
        )

    tiers = assign_tiers(scored)
    descriptors = [
        BackendDescriptor(
            id=item.id,
            display_name=item.display_name,
            context_limit=item.context_limit,
            quality_score=item.match.score,
            tier=tiers.get(item.id, Tier.LOW),
        )
        for item in scored
    ]
    descriptors.sort(key=lambda item: (-item.tier.rank, -item.quality_score, item.id))
    return descriptors


class BackendCatalog:
    """Backend list cached on disk and refreshed when older than ``max_age``.

    The in-memory list is swapped as a whole under a lock, so readers never
    observe a partially refreshed catalog.
    """

    def __init__(
        self,
        *,
        source: CatalogSource,
        path: Path,
        scores: Mapping[str, float],
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._path = path
        self._scores = dict(scores)
        self._max_age_seconds = max_age_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._descriptors: tuple[BackendDescriptor, ...] = ()
        self._fetched_at: datetime | None = None

    @property
    def fetched_at(self) -> datetime | None:
        with self._lock:
            return self._fetched_at

    def descriptors(self) -> list[BackendDescriptor]:
        with self._lock:
            return list(self._descriptors)

    def get(self, backend_id: str) -> BackendDescriptor | None:
        with self._lock:
            snapshot = self._descriptors
        for descriptor in snapshot:
            if descriptor.id == backend_id:
                return descriptor
        return None

    def refresh(
        self,
        max_age_seconds: int | None = None,
        *,
        force: bool = False,
    ) -> list[BackendDescriptor]:
        """Return a fresh backend list, fetching only when the cache is stale."""

        max_age = self._max_age_seconds if max_age_seconds is None else max_age_seconds
        with self._refresh_lock:
            if self._fetched_at is None:
                self._load_snapshot()
            fetched_at = self.fetched_at
            if not force and fetched_at is not None:
                age = (self._clock() - fetched_at).total_seconds()
                if age < max_age:
                    logger.debug("Using cached catalog (%.0fs old)", age)
                    return self.descriptors()

            try:
                rows = self._source.list_backends()
            except GatewayError as exc:
                if fetched_at is None:
                    raise CatalogUnavailableError(
                        message=f"Backend catalog unavailable and no cache at {self._path}: {exc}",
                    ) from exc
                logger.warning(
                    "Catalog refresh failed, using stale cache from %s: %s",
                    fetched_at,
                    exc,
                )
                return self.descriptors()

            descriptors = build_descriptors(rows, scores=self._scores)
            now = self._clock()
            write_json_atomic(
                self._path,
                {
                    "fetched_at": now.isoformat(),
                    "backends": [item.to_dict() for item in descriptors],
                },
            )
            self._install(descriptors, now)
            logger.info("Catalog refreshed: %d zero-cost backends", len(descriptors))
            return list(descriptors)

    def _load_snapshot(self) -> None:
        try:
            payload = read_json(self._path)
        except ValueError:
            logger.warning("Ignoring unreadable catalog snapshot %s", self._path)
            return
        if not isinstance(payload, dict) or "fetched_at" not in payload:
            return
        descriptors = [
            BackendDescriptor.from_dict(row)
            for row in payload.get("backends", [])
            if isinstance(row, dict) and row.get("id")
        ]
        self._install(descriptors, from_iso(str(payload["fetched_at"])))

    def _install(self, descriptors: list[BackendDescriptor], fetched_at: datetime) -> None:
        replacement = tuple(descriptors)
        with self._lock:
            self._descriptors = replacement
            self._fetched_at = fetched_at
