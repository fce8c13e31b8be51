"""OpenRouter-compatible inference gateway and catalog source over httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from sitesmith.config import GatewaySettings
from sitesmith.dispatch.errors import GatewayError
from sitesmith.dispatch.failure_classifier import classify_error_text, classify_http_failure
from sitesmith.dispatch.gateway.base import GatewayOptions
from sitesmith.dispatch.models import FailureKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENT = "sitesmith/0.1 (+https://github.com/sitesmith/sitesmith)"
_ERROR_BODY_CHARS = 500


class OpenRouterGateway:
    """HTTP gateway: ``POST /chat/completions`` for generation, ``GET /models`` for listing."""

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {
            "User-Agent": DEFAULT_USER_AGENT,
            "Content-Type": "application/json",
            "X-Title": settings.app_name,
        }
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        self._settings = settings
        self._client = httpx.Client(
            base_url=settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def send(self, backend_id: str, payload: dict[str, Any], options: GatewayOptions) -> str:
        body = {
            "model": backend_id,
            "messages": payload["messages"],
            "max_tokens": options.max_output_tokens,
            "temperature": options.temperature,
            "response_format": {"type": "json_object"},
            "stream": False,
        }
        try:
            response = self._client.post(
                "/chat/completions",
                json=body,
                timeout=httpx.Timeout(options.timeout_seconds, connect=10.0),
            )
        except httpx.TimeoutException as exc:
            raise GatewayError(
                message=f"Timeout calling {backend_id}: {exc}",
                kind=FailureKind.TIMEOUT,
            ) from exc
        except httpx.HTTPError as exc:
            raise GatewayError(
                message=f"HTTP error calling {backend_id}: {exc}",
                kind=FailureKind.TRANSPORT,
            ) from exc

        if not response.is_success:
            raise _error_from_response(backend_id, response)

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                message=f"Non-JSON gateway envelope from {backend_id}",
                kind=FailureKind.TRANSPORT,
                status_code=response.status_code,
            ) from exc

        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            message = str(data["error"].get("message") or data["error"])
            classification = classify_error_text(message)
            raise GatewayError(
                message=f"{backend_id} returned error: {message}",
                kind=classification.kind,
                status_code=response.status_code,
            )

        content = _extract_content(data)
        if not content.strip():
            raise GatewayError(
                message=f"Empty response from {backend_id}",
                kind=FailureKind.EMPTY_RESPONSE,
                status_code=response.status_code,
            )
        return content

    def list_backends(self) -> list[dict[str, Any]]:
        try:
            response = self._client.get("/models")
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise GatewayError(
                message=f"Backend listing failed: {exc}",
                kind=FailureKind.TRANSPORT,
            ) from exc
        except ValueError as exc:
            raise GatewayError(
                message="Backend listing is not valid JSON.",
                kind=FailureKind.TRANSPORT,
            ) from exc
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise GatewayError(
                message="Backend listing has no data array.",
                kind=FailureKind.TRANSPORT,
            )
        return [row for row in rows if isinstance(row, dict)]

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenRouterGateway:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _error_from_response(backend_id: str, response: httpx.Response) -> GatewayError:
    body = response.text[:_ERROR_BODY_CHARS]
    classification = classify_http_failure(status_code=response.status_code, body=body)
    logger.debug("Gateway failure %s", classification.to_details(backend_id=backend_id))
    return GatewayError(
        message=f"HTTP {response.status_code} from {backend_id}: {body}",
        kind=classification.kind,
        status_code=response.status_code,
        retry_after=_retry_after_seconds(response),
    )


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _extract_content(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    message = first.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    text = first.get("text")
    return text if isinstance(text, str) else ""
