"""Domain exceptions raised by dispatch components."""

from __future__ import annotations

from dataclasses import dataclass

from sitesmith.dispatch.models import FailureKind


@dataclass(slots=True)
class DispatchError(Exception):
    """Base error for dispatch components."""

    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class GatewayError(DispatchError):
    """Gateway call failure tagged with its normalized kind."""

    kind: FailureKind = FailureKind.TRANSPORT
    status_code: int | None = None
    retry_after: float | None = None


@dataclass(slots=True)
class MalformedOutputError(DispatchError):
    """Raw response could not be recovered into a structured document."""

    preview: str = ""


@dataclass(slots=True)
class CatalogUnavailableError(DispatchError):
    """No cached catalog exists and the listing could not be fetched."""


@dataclass(slots=True)
class IllegalTransitionError(DispatchError):
    """Pipeline state machine received a transition it does not allow."""

    source: str = ""
    target: str = ""
