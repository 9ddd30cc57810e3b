"""Configuration helpers for the idea pipeline service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Mapping

from dotenv import load_dotenv

ENV_PREFIX = "IDEA_PIPELINE_"

CEREBRAS_BASE_URL = "https://api.cerebras.ai/v1"

DEFAULT_MODELS: dict[str, tuple[str, str]] = {
    # provider -> (heavy model, light model)
    "openai": ("gpt-4o", "gpt-4o-mini"),
    "cerebras": ("llama-3.3-70b", "llama3.1-8b"),
}

DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
)

load_dotenv(override=False)


@dataclass(frozen=True)
class PipelineSettings:
    """Settings container for the orchestration core.

    OpenAI is considered the primary provider; if its key is missing the
    configuration falls back to Cerebras, which speaks the same protocol.
    Without any key the service runs on the offline heuristic backend.
    """

    openai_api_key: str | None = None
    cerebras_api_key: str | None = None
    base_url_override: str | None = None
    model_heavy_override: str | None = None
    model_light_override: str | None = None
    max_concurrency: int = 4
    stage_timeout_seconds: float = 45.0
    stage_retries: int = 2
    retry_backoff_seconds: float = 1.0
    job_timeout_seconds: float = 300.0
    retention_seconds: float = 3600.0
    sweep_interval_seconds: float = 60.0
    parallel_stages: bool = True
    store_dir: str | None = None
    log_level: str = "INFO"
    allowed_origins: tuple[str, ...] = field(default=DEFAULT_ALLOWED_ORIGINS)

    @property
    def primary_provider(self) -> str | None:
        """Return the preferred provider based on available credentials."""

        if self.openai_api_key:
            return "openai"
        if self.cerebras_api_key:
            return "cerebras"
        return None

    def get_api_key(self, provider: str | None = None) -> str | None:
        """Return the API key for the requested provider.

        When *provider* is omitted the primary provider's key is returned.
        """

        resolved_provider = provider or self.primary_provider
        if resolved_provider == "openai":
            return self.openai_api_key
        if resolved_provider == "cerebras":
            return self.cerebras_api_key
        return None

    @property
    def base_url(self) -> str | None:
        """Endpoint for the primary provider; ``None`` means the SDK default."""

        if self.base_url_override:
            return self.base_url_override
        if self.primary_provider == "cerebras":
            return CEREBRAS_BASE_URL
        return None

    def model_for(self, weight: str) -> str:
        """Resolve the ``heavy`` or ``light`` model name for the primary provider."""

        heavy, light = DEFAULT_MODELS.get(self.primary_provider or "openai", DEFAULT_MODELS["openai"])
        if weight == "light":
            return self.model_light_override or light
        return self.model_heavy_override or heavy

    @property
    def has_any_keys(self) -> bool:
        """True when at least one provider API key is configured."""

        return self.primary_provider is not None


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    return int(_env_float(environ, name, default))


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _resolve_allowed_origins(environ: Mapping[str, str]) -> tuple[str, ...]:
    """Return allowed origins, optionally sourced from an env override."""

    raw = environ.get(ENV_PREFIX + "ALLOWED_ORIGINS")
    if raw:
        return tuple(origin.strip() for origin in raw.split(",") if origin.strip())
    return DEFAULT_ALLOWED_ORIGINS


def load_settings(environ: Mapping[str, str]) -> PipelineSettings:
    """Build settings from an environment mapping."""

    max_concurrency = _env_int(environ, "MAX_CONCURRENCY", 4)
    if max_concurrency < 1:
        raise ValueError(f"{ENV_PREFIX}MAX_CONCURRENCY must be at least 1")

    return PipelineSettings(
        openai_api_key=environ.get("OPENAI_API_KEY") or None,
        cerebras_api_key=environ.get("CEREBRAS_API_KEY") or None,
        base_url_override=environ.get(ENV_PREFIX + "BASE_URL") or None,
        model_heavy_override=environ.get(ENV_PREFIX + "MODEL_HEAVY") or None,
        model_light_override=environ.get(ENV_PREFIX + "MODEL_LIGHT") or None,
        max_concurrency=max_concurrency,
        stage_timeout_seconds=_env_float(environ, "STAGE_TIMEOUT_SECONDS", 45.0),
        stage_retries=max(0, _env_int(environ, "STAGE_RETRIES", 2)),
        retry_backoff_seconds=_env_float(environ, "RETRY_BACKOFF_SECONDS", 1.0),
        job_timeout_seconds=_env_float(environ, "JOB_TIMEOUT_SECONDS", 300.0),
        retention_seconds=_env_float(environ, "RETENTION_SECONDS", 3600.0),
        sweep_interval_seconds=_env_float(environ, "SWEEP_INTERVAL_SECONDS", 60.0),
        parallel_stages=_env_bool(environ, "PARALLEL_STAGES", True),
        store_dir=environ.get(ENV_PREFIX + "STORE_DIR") or None,
        log_level=environ.get(ENV_PREFIX + "LOG_LEVEL", "INFO").upper(),
        allowed_origins=_resolve_allowed_origins(environ),
    )


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    """Read environment variables and return cached pipeline settings."""

    return load_settings(os.environ)
