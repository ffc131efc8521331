"""Runtime configuration for the job pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from content_digest.pipeline.providers import SUPPORTED_PROVIDERS
from content_digest.pipeline.providers.base import ProviderConfig
from content_digest.pipeline.providers.gemini_provider import DEFAULT_GEMINI_MODEL
from content_digest.pipeline.providers.openai_provider import DEFAULT_OPENAI_MODEL


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool settings."""

    pool_size: int = 3
    poll_interval_seconds: float = 1.0
    visibility_timeout_seconds: int = 300
    worker_id_prefix: str = "worker"


@dataclass(slots=True)
class QueueSettings:
    """Durable queue redelivery settings."""

    max_deliveries: int = 3
    retry_base_seconds: int = 5
    purge_after_days: int = 7


@dataclass(slots=True)
class ProviderSettings:
    """Generative-AI provider selection and credentials."""

    default_provider: str = "gemini"
    openai_api_key: str | None = None
    openai_model: str = DEFAULT_OPENAI_MODEL
    openai_base_url: str | None = None
    gemini_api_keys: tuple[str, ...] = ()
    gemini_model: str = DEFAULT_GEMINI_MODEL
    gemini_base_url: str | None = None
    request_timeout_seconds: float = 120.0
    concurrency: int = 1
    max_retries: int = 3
    retry_base_ms: int = 2000
    temperature: float = 0.7
    max_output_tokens: int = 4000

    def provider_config(self, name: str | None = None) -> ProviderConfig:
        """Build the request config for ``name`` (default provider when omitted)."""

        provider = (name or self.default_provider).strip().lower()
        if provider == "openai":
            keys: tuple[str, ...] = (self.openai_api_key,) if self.openai_api_key else ()
            model = self.openai_model
            base_url = self.openai_base_url
        elif provider == "gemini":
            keys = self.gemini_api_keys
            model = self.gemini_model
            base_url = self.gemini_base_url
        elif provider == "echo":
            keys = ()
            model = "echo"
            base_url = None
        else:
            raise ValueError(
                f"Unsupported provider: {provider!r}. "
                f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}",
            )
        return ProviderConfig(
            name=provider,
            model=model,
            api_keys=keys,
            base_url=base_url,
            timeout_seconds=self.request_timeout_seconds,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )


@dataclass(slots=True)
class ExtractionSettings:
    """Extraction gateway settings."""

    max_chars: int = 200_000
    fetch_timeout_seconds: float = 30.0
    transcript_languages: tuple[str, ...] = ("ko", "en")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".content_digest.db")
    sqlite_busy_timeout_ms: int = 5000
    templates_path: Path | None = None
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        templates_path = os.getenv("CONTENT_DIGEST_TEMPLATES_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("CONTENT_DIGEST_DB_PATH", ".content_digest.db")),
            sqlite_busy_timeout_ms=_env_int("CONTENT_DIGEST_SQLITE_BUSY_TIMEOUT_MS", 5000),
            templates_path=Path(templates_path) if templates_path else None,
            worker=WorkerSettings(
                pool_size=_env_int("CONTENT_DIGEST_WORKER_POOL_SIZE", 3),
                poll_interval_seconds=_env_float("CONTENT_DIGEST_WORKER_POLL_INTERVAL_SECONDS", 1.0),
                visibility_timeout_seconds=_env_int(
                    "CONTENT_DIGEST_WORKER_VISIBILITY_TIMEOUT_SECONDS",
                    300,
                ),
                worker_id_prefix=os.getenv("CONTENT_DIGEST_WORKER_ID_PREFIX", "worker"),
            ),
            queue=QueueSettings(
                max_deliveries=_env_int("CONTENT_DIGEST_QUEUE_MAX_DELIVERIES", 3),
                retry_base_seconds=_env_int("CONTENT_DIGEST_QUEUE_RETRY_BASE_SECONDS", 5),
                purge_after_days=_env_int("CONTENT_DIGEST_QUEUE_PURGE_AFTER_DAYS", 7),
            ),
            provider=ProviderSettings(
                default_provider=os.getenv("CONTENT_DIGEST_PROVIDER", "gemini").strip().lower(),
                openai_api_key=os.getenv("OPENAI_API_KEY") or None,
                openai_model=os.getenv("CONTENT_DIGEST_OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
                openai_base_url=os.getenv("CONTENT_DIGEST_OPENAI_BASE_URL") or None,
                gemini_api_keys=_collect_gemini_keys(),
                gemini_model=os.getenv("CONTENT_DIGEST_GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
                gemini_base_url=os.getenv("CONTENT_DIGEST_GEMINI_BASE_URL") or None,
                request_timeout_seconds=_env_float(
                    "CONTENT_DIGEST_PROVIDER_TIMEOUT_SECONDS",
                    120.0,
                ),
                concurrency=_env_int("CONTENT_DIGEST_PROVIDER_CONCURRENCY", 1),
                max_retries=_env_int("CONTENT_DIGEST_PROVIDER_MAX_RETRIES", 3),
                retry_base_ms=_env_int("CONTENT_DIGEST_PROVIDER_RETRY_BASE_MS", 2000),
                temperature=_env_float("CONTENT_DIGEST_PROVIDER_TEMPERATURE", 0.7),
                max_output_tokens=_env_int("CONTENT_DIGEST_PROVIDER_MAX_OUTPUT_TOKENS", 4000),
            ),
            extraction=ExtractionSettings(
                max_chars=_env_int("CONTENT_DIGEST_EXTRACTION_MAX_CHARS", 200_000),
                fetch_timeout_seconds=_env_float(
                    "CONTENT_DIGEST_EXTRACTION_FETCH_TIMEOUT_SECONDS",
                    30.0,
                ),
                transcript_languages=_env_csv(
                    "CONTENT_DIGEST_TRANSCRIPT_LANGUAGES",
                    ("ko", "en"),
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker or queue settings are unusable."""

        if self.worker.pool_size < 1:
            raise ValueError("CONTENT_DIGEST_WORKER_POOL_SIZE must be >= 1.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("CONTENT_DIGEST_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.visibility_timeout_seconds <= 0:
            raise ValueError("CONTENT_DIGEST_WORKER_VISIBILITY_TIMEOUT_SECONDS must be > 0.")
        if self.queue.max_deliveries < 1:
            raise ValueError("CONTENT_DIGEST_QUEUE_MAX_DELIVERIES must be >= 1.")
        if self.queue.retry_base_seconds < 0:
            raise ValueError("CONTENT_DIGEST_QUEUE_RETRY_BASE_SECONDS must be >= 0.")
        if self.provider.concurrency < 1:
            raise ValueError("CONTENT_DIGEST_PROVIDER_CONCURRENCY must be >= 1.")
        if self.provider.max_retries < 0:
            raise ValueError("CONTENT_DIGEST_PROVIDER_MAX_RETRIES must be >= 0.")
        if self.provider.request_timeout_seconds <= 0:
            raise ValueError("CONTENT_DIGEST_PROVIDER_TIMEOUT_SECONDS must be > 0.")
        if self.extraction.max_chars <= 0:
            raise ValueError("CONTENT_DIGEST_EXTRACTION_MAX_CHARS must be > 0.")

    def validate_for_provider(self, name: str | None = None) -> None:
        """Raise configuration error if the selected provider has no credentials."""

        provider = (name or self.provider.default_provider).strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"CONTENT_DIGEST_PROVIDER must be one of {', '.join(SUPPORTED_PROVIDERS)}; "
                f"got {provider!r}.",
            )
        if provider == "openai" and not self.provider.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required for the openai provider.")
        if provider == "gemini" and not self.provider.gemini_api_keys:
            raise ValueError(
                "GEMINI_API_KEY or GEMINI_API_KEYS is required for the gemini provider.",
            )


def _collect_gemini_keys() -> tuple[str, ...]:
    values: list[str] = []
    csv_list = os.getenv("GEMINI_API_KEYS", "").strip()
    if csv_list:
        values.extend(part.strip() for part in csv_list.split(","))
    single = os.getenv("GEMINI_API_KEY", "").strip()
    if single:
        values.append(single)
    deduped: list[str] = []
    for value in values:
        if value and value not in deduped:
            deduped.append(value)
    return tuple(deduped)


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
