"""Runtime configuration for catalog, dispatch and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_FALLBACK_BULK_IDS: tuple[str, ...] = (
    "kwaipilot/kat-coder-pro:free",
    "mistralai/devstral-2512:free",
)


@dataclass(slots=True)
class GatewaySettings:
    """Inference gateway connection settings."""

    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    request_timeout_seconds: float = 120.0
    max_output_tokens: int = 8_000
    temperature: float = 0.2
    app_name: str = "sitesmith"


@dataclass(slots=True)
class CatalogSettings:
    """Backend catalog cache and scoring settings."""

    cache_dir: Path = Path(".cache")
    max_age_seconds: int = 24 * 60 * 60
    scores_path: Path | None = None
    fallback_bulk_ids: tuple[str, ...] = DEFAULT_FALLBACK_BULK_IDS

    @property
    def catalog_path(self) -> Path:
        return self.cache_dir / "backend-catalog.json"

    @property
    def ledger_path(self) -> Path:
        return self.cache_dir / "backend-trust.json"


@dataclass(slots=True)
class DispatchSettings:
    """Concurrency, retry and timeout budget for generation tasks."""

    concurrency_limit: int = 3
    max_attempts_per_task: int = 3
    attempt_timeout_seconds: float = 180.0
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    rate_limit_switch_after: int = 2
    max_validation_retries: int = 1
    pipeline_timeout_seconds: float = 0.0


@dataclass(slots=True)
class ValidationSettings:
    """Artifact validation thresholds."""

    min_content_chars: int = 200
    sanitize_colors: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".sitesmith.db")
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    catalog: CatalogSettings = field(default_factory=CatalogSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        scores_raw = os.getenv("SITESMITH_SCORES_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("SITESMITH_DB_PATH", ".sitesmith.db")),
            gateway=GatewaySettings(
                base_url=os.getenv("SITESMITH_GATEWAY_URL", "https://openrouter.ai/api/v1"),
                api_key=os.getenv("SITESMITH_API_KEY", os.getenv("OPENROUTER_API_KEY", "")),
                request_timeout_seconds=float(
                    os.getenv("SITESMITH_REQUEST_TIMEOUT_SECONDS", "120"),
                ),
                max_output_tokens=int(os.getenv("SITESMITH_MAX_OUTPUT_TOKENS", "8000")),
                temperature=float(os.getenv("SITESMITH_TEMPERATURE", "0.2")),
            ),
            catalog=CatalogSettings(
                cache_dir=Path(os.getenv("SITESMITH_CACHE_DIR", ".cache")),
                max_age_seconds=int(os.getenv("SITESMITH_CATALOG_MAX_AGE_SECONDS", "86400")),
                scores_path=Path(scores_raw) if scores_raw else None,
                fallback_bulk_ids=_collect_ids(
                    "SITESMITH_FALLBACK_BULK_IDS",
                    default=DEFAULT_FALLBACK_BULK_IDS,
                ),
            ),
            dispatch=DispatchSettings(
                concurrency_limit=int(os.getenv("SITESMITH_CONCURRENCY", "3")),
                max_attempts_per_task=int(os.getenv("SITESMITH_MAX_ATTEMPTS", "3")),
                attempt_timeout_seconds=float(
                    os.getenv("SITESMITH_ATTEMPT_TIMEOUT_SECONDS", "180"),
                ),
                backoff_base_seconds=float(os.getenv("SITESMITH_BACKOFF_BASE_SECONDS", "2")),
                backoff_max_seconds=float(os.getenv("SITESMITH_BACKOFF_MAX_SECONDS", "60")),
                rate_limit_switch_after=int(
                    os.getenv("SITESMITH_RATE_LIMIT_SWITCH_AFTER", "2"),
                ),
                max_validation_retries=int(
                    os.getenv("SITESMITH_MAX_VALIDATION_RETRIES", "1"),
                ),
                pipeline_timeout_seconds=float(
                    os.getenv("SITESMITH_PIPELINE_TIMEOUT_SECONDS", "0"),
                ),
            ),
            validation=ValidationSettings(
                min_content_chars=int(os.getenv("SITESMITH_MIN_CONTENT_CHARS", "200")),
                sanitize_colors=_env_bool("SITESMITH_SANITIZE_COLORS", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        _validate_gateway_url(self.gateway.base_url)
        if self.gateway.max_output_tokens <= 0:
            raise ValueError("SITESMITH_MAX_OUTPUT_TOKENS must be > 0.")
        if not 0.0 <= self.gateway.temperature <= 2.0:
            raise ValueError("SITESMITH_TEMPERATURE must be within [0, 2].")
        if self.catalog.max_age_seconds < 0:
            raise ValueError("SITESMITH_CATALOG_MAX_AGE_SECONDS must be >= 0.")
        if len(self.catalog.fallback_bulk_ids) < 2:
            raise ValueError("SITESMITH_FALLBACK_BULK_IDS must list at least two backend ids.")
        if self.dispatch.concurrency_limit <= 0:
            raise ValueError("SITESMITH_CONCURRENCY must be > 0.")
        if self.dispatch.max_attempts_per_task <= 0:
            raise ValueError("SITESMITH_MAX_ATTEMPTS must be > 0.")
        if self.dispatch.attempt_timeout_seconds <= 0:
            raise ValueError("SITESMITH_ATTEMPT_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.backoff_base_seconds < 0:
            raise ValueError("SITESMITH_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.dispatch.backoff_max_seconds < self.dispatch.backoff_base_seconds:
            raise ValueError(
                "SITESMITH_BACKOFF_MAX_SECONDS must be >= SITESMITH_BACKOFF_BASE_SECONDS.",
            )
        if self.dispatch.rate_limit_switch_after <= 0:
            raise ValueError("SITESMITH_RATE_LIMIT_SWITCH_AFTER must be > 0.")
        if self.dispatch.max_validation_retries < 0:
            raise ValueError("SITESMITH_MAX_VALIDATION_RETRIES must be >= 0.")
        if self.dispatch.pipeline_timeout_seconds < 0:
            raise ValueError("SITESMITH_PIPELINE_TIMEOUT_SECONDS must be >= 0.")
        if self.validation.min_content_chars < 0:
            raise ValueError("SITESMITH_MIN_CONTENT_CHARS must be >= 0.")


def _collect_ids(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    deduped: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        value = part.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        deduped.append(value)
    return tuple(deduped)


def _validate_gateway_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid gateway URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
