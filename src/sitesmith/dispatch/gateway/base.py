"""Gateway interfaces for generation calls and backend listings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(slots=True)
class GatewayOptions:
    """Per-call generation limits."""

    timeout_seconds: float
    max_output_tokens: int = 8_000
    temperature: float = 0.2


class InferenceGateway(Protocol):
    """Protocol implemented by generation gateways."""

    def send(self, backend_id: str, payload: dict[str, Any], options: GatewayOptions) -> str:
        """Send one request to ``backend_id`` and return the raw response text.

        Raises ``GatewayError`` tagged with a transport, auth, empty or rate-limit kind.
        """


class CatalogSource(Protocol):
    """Protocol implemented by backend listing providers."""

    def list_backends(self) -> list[dict[str, Any]]:
        """Return raw backend listing rows."""
