"""Role resolution: ranked eligible backend ids from catalog and trust state."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sitesmith.config import DEFAULT_FALLBACK_BULK_IDS
from sitesmith.dispatch.catalog import BackendCatalog
from sitesmith.dispatch.models import BackendDescriptor, Role, RoleAssignment, Tier
from sitesmith.dispatch.trust import TrustLedger

logger = logging.getLogger(__name__)


def resolve_role(
    role: Role,
    *,
    catalog: BackendCatalog,
    ledger: TrustLedger,
    fallback_bulk_ids: Sequence[str] = DEFAULT_FALLBACK_BULK_IDS,
) -> RoleAssignment:
    """Resolve ``role`` against current catalog and ledger state.

    Backends with an open circuit (an untrusted ledger record) are excluded;
    backends never observed are eligible. When nothing is eligible the
    least recently failed untrusted backend is used as a last resort.
    """

    ranked = _eligible(catalog.descriptors(), ledger)
    authoritative = [item.id for item in ranked]

    if role in {Role.AUTHORITATIVE, Role.ESCALATION}:
        return RoleAssignment(role=role, ordered_backend_ids=tuple(authoritative))

    head = authoritative[0] if authoritative else None

    if role is Role.BULK:
        bulk = [item.id for item in ranked if item.tier in {Tier.LOW, Tier.MID} and item.id != head]
        if not bulk:
            bulk = [item.id for item in ranked if item.tier is Tier.HIGH and item.id != head]
        if not bulk:
            bulk = [backend_id for backend_id in fallback_bulk_ids if backend_id != head]
            logger.warning("No eligible bulk backends, using fallback set %s", bulk)
        return RoleAssignment(role=role, ordered_backend_ids=tuple(bulk))

    mid_first = [item.id for item in ranked if item.tier is Tier.MID]
    rest = [backend_id for backend_id in authoritative if backend_id not in mid_first]
    return RoleAssignment(role=role, ordered_backend_ids=tuple(mid_first + rest))


class RoleResolver:
    """Bound resolver used by the dispatcher and coordinator."""

    def __init__(
        self,
        *,
        catalog: BackendCatalog,
        ledger: TrustLedger,
        fallback_bulk_ids: Sequence[str] = DEFAULT_FALLBACK_BULK_IDS,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._fallback_bulk_ids = tuple(fallback_bulk_ids)

    def resolve(self, role: Role) -> list[str]:
        return list(self.assignment(role).ordered_backend_ids)

    def assignment(self, role: Role) -> RoleAssignment:
        return resolve_role(
            role,
            catalog=self._catalog,
            ledger=self._ledger,
            fallback_bulk_ids=self._fallback_bulk_ids,
        )


def _eligible(
    descriptors: Sequence[BackendDescriptor],
    ledger: TrustLedger,
) -> list[BackendDescriptor]:
    ordered = sorted(descriptors, key=_rank_key)
    eligible: list[BackendDescriptor] = []
    untrusted: list[tuple[BackendDescriptor, float]] = []
    for descriptor in ordered:
        record = ledger.get(descriptor.id)
        if record is None or record.trusted:
            eligible.append(descriptor)
        else:
            untrusted.append((descriptor, record.last_updated.timestamp()))
    if eligible or not untrusted:
        return eligible
    last_resort = min(untrusted, key=lambda pair: (pair[1], pair[0].id))[0]
    logger.warning("All backends untrusted, falling back to %s", last_resort.id)
    return [last_resort]


def _rank_key(descriptor: BackendDescriptor) -> tuple[int, float, str]:
    return (-descriptor.tier.rank, -descriptor.quality_score, descriptor.id)
