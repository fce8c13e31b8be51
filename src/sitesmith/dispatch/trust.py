"""Persistent per-backend trust ledger acting as a circuit breaker."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from sitesmith.dispatch.models import TrustRecord
from sitesmith.storage.common import from_iso, read_json, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

UNTRUST_MARGIN = 3


class TrustLedger:
    """Success/failure counters per backend, rewritten to disk on every mutation.

    A backend becomes untrusted once failures exceed successes by
    ``UNTRUST_MARGIN`` and trusted again on its next success.
    """

    def __init__(
        self,
        path: Path,
        *,
        untrust_margin: int = UNTRUST_MARGIN,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._path = path
        self._untrust_margin = untrust_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, TrustRecord] = self._load()

    def is_trusted(self, backend_id: str) -> bool:
        with self._lock:
            record = self._records.get(backend_id)
            return record is not None and record.trusted

    def get(self, backend_id: str) -> TrustRecord | None:
        with self._lock:
            record = self._records.get(backend_id)
            return _copy(record) if record is not None else None

    def records(self) -> list[TrustRecord]:
        with self._lock:
            return [_copy(record) for record in sorted(self._records.values(), key=_by_id)]

    def record_success(self, backend_id: str) -> TrustRecord:
        with self._lock:
            record = self._records.get(backend_id)
            if record is None:
                record = self._new_record(backend_id)
                self._records[backend_id] = record
            record.success_count += 1
            if not record.trusted:
                logger.info("Backend %s trusted again after success", backend_id)
            record.trusted = True
            record.last_updated = self._clock()
            self._persist()
            return _copy(record)

    def record_failure(self, backend_id: str) -> TrustRecord:
        with self._lock:
            record = self._records.get(backend_id)
            if record is None:
                record = self._new_record(backend_id)
                record.trusted = False
                self._records[backend_id] = record
            record.failure_count += 1
            record.last_updated = self._clock()
            margin = record.failure_count - record.success_count
            if record.trusted and margin >= self._untrust_margin:
                record.trusted = False
                logger.warning(
                    "Backend %s untrusted: %d failures vs %d successes",
                    backend_id,
                    record.failure_count,
                    record.success_count,
                )
            self._persist()
            return _copy(record)

    def _new_record(self, backend_id: str) -> TrustRecord:
        return TrustRecord(
            backend_id=backend_id,
            trusted=True,
            success_count=0,
            failure_count=0,
            last_updated=self._clock(),
        )

    def _persist(self) -> None:
        write_json_atomic(
            self._path,
            {backend_id: record.to_dict() for backend_id, record in self._records.items()},
        )

    def _load(self) -> dict[str, TrustRecord]:
        try:
            payload = read_json(self._path)
        except ValueError:
            logger.warning("Ignoring unreadable trust ledger %s", self._path)
            return {}
        if not isinstance(payload, dict):
            return {}
        records: dict[str, TrustRecord] = {}
        for backend_id, raw in payload.items():
            if not isinstance(raw, dict):
                continue
            last_updated = raw.get("last_updated")
            records[str(backend_id)] = TrustRecord(
                backend_id=str(backend_id),
                trusted=bool(raw.get("trusted", False)),
                success_count=max(0, int(raw.get("success_count", 0))),
                failure_count=max(0, int(raw.get("failure_count", 0))),
                last_updated=from_iso(last_updated) if last_updated else self._clock(),
            )
        return records


def _copy(record: TrustRecord) -> TrustRecord:
    return TrustRecord(
        backend_id=record.backend_id,
        trusted=record.trusted,
        success_count=record.success_count,
        failure_count=record.failure_count,
        last_updated=record.last_updated,
    )


def _by_id(record: TrustRecord) -> str:
    return record.backend_id
