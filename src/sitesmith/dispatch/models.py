"""Domain models for backend selection, dispatch and artifact validation."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class Tier(str, Enum):
    """Capability tier derived from offline quality score percentiles."""

    LOW = "low"
    MID = "mid"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {Tier.LOW: 0, Tier.MID: 1, Tier.HIGH: 2}


class Role(str, Enum):
    """Selection roles a generation task may request."""

    AUTHORITATIVE = "authoritative"
    ESCALATION = "escalation"
    BULK = "bulk"
    AUXILIARY = "auxiliary"


class FailureKind(str, Enum):
    """Normalized failure taxonomy used by retry policy and reporting."""

    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    EMPTY_RESPONSE = "empty_response"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    MALFORMED_OUTPUT = "malformed_output"
    VALIDATION_ERROR = "validation_error"
    EXHAUSTED = "exhausted"
    CATALOG_UNAVAILABLE = "catalog_unavailable"

    @property
    def is_transport(self) -> bool:
        return self in _TRANSPORT_KINDS


_TRANSPORT_KINDS = frozenset(
    {
        FailureKind.TRANSPORT,
        FailureKind.TIMEOUT,
        FailureKind.EMPTY_RESPONSE,
        FailureKind.AUTH,
    },
)


class TaskStatus(str, Enum):
    """Final status of one generation task inside a batch."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class AttemptStatus(str, Enum):
    """Outcome of a single attempt, as recorded in the journal."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    """Catalog entry for one generation backend."""

    id: str
    display_name: str
    context_limit: int
    quality_score: float
    tier: Tier

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "context_limit": self.context_limit,
            "quality_score": self.quality_score,
            "tier": self.tier.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> BackendDescriptor:
        return cls(
            id=str(payload["id"]),
            display_name=str(payload.get("display_name") or payload["id"]),
            context_limit=int(payload.get("context_limit") or 0),
            quality_score=float(payload.get("quality_score") or 0.0),
            tier=Tier(str(payload.get("tier") or Tier.LOW.value)),
        )


@dataclass(slots=True)
class TrustRecord:
    """Per-backend reliability counters gating eligibility."""

    backend_id: str
    trusted: bool
    success_count: int
    failure_count: int
    last_updated: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "trusted": self.trusted,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class RoleAssignment:
    """Ranked backend ids resolved for one role."""

    role: Role
    ordered_backend_ids: tuple[str, ...]

    @property
    def head(self) -> str | None:
        return self.ordered_backend_ids[0] if self.ordered_backend_ids else None


@dataclass(slots=True)
class GenerationTask:
    """One unit of work sent to a backend."""

    task_id: str
    role: Role
    payload: dict[str, Any]
    attempt: int = 0
    backend_id: str | None = None
    expected_paths: tuple[str, ...] = ()
    required: bool = True
    exclude_backends: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ParsedArtifact:
    """Validated artifact produced by repair and validation."""

    files: Mapping[str, str]
    entry: str
    notes: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True, slots=True)
class RepairResult:
    """Structured document recovered from raw backend output."""

    document: Any
    strategy: str


@dataclass(slots=True)
class ValidationReport:
    """Errors block acceptance; warnings are reported only."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    artifact: ParsedArtifact | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors and self.artifact is not None


@dataclass(frozen=True, slots=True)
class TaskFailure:
    """Terminal failure description for one task."""

    kind: FailureKind
    last_kind: FailureKind | None
    attempted_backends: tuple[str, ...]
    message: str


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    """Final result of one generation task."""

    task_id: str
    status: TaskStatus
    backend_id: str | None = None
    attempts: int = 0
    raw_output: str | None = None
    repaired: RepairResult | None = None
    failure: TaskFailure | None = None


@dataclass(slots=True)
class BatchResult:
    """Outcomes of one concurrent batch keyed by task id."""

    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)
    cancelled: bool = False

    def _with_status(self, status: TaskStatus) -> dict[str, TaskOutcome]:
        return {
            task_id: outcome
            for task_id, outcome in self.outcomes.items()
            if outcome.status is status
        }

    @property
    def succeeded(self) -> dict[str, TaskOutcome]:
        return self._with_status(TaskStatus.SUCCEEDED)

    @property
    def failed(self) -> dict[str, TaskOutcome]:
        return self._with_status(TaskStatus.FAILED)

    @property
    def not_attempted(self) -> dict[str, TaskOutcome]:
        return self._with_status(TaskStatus.NOT_ATTEMPTED)

    def summary(self) -> str:
        return f"{len(self.succeeded)} of {len(self.outcomes)} tasks succeeded"


@dataclass(frozen=True, slots=True)
class AttemptEvent:
    """Telemetry for one attempt, forwarded to the attempt journal."""

    task_id: str
    attempt_no: int
    role: Role
    backend_id: str
    status: AttemptStatus
    failure_kind: FailureKind | None
    duration_ms: int
    output_chars: int
    error_summary: str | None = None
