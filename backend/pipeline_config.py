from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"

_logging_configured = False


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= minimum else default


def _split_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@dataclass(frozen=True)
class PipelineSettings:
    provider: str = "gemini"
    model_name: str | None = None
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    rate_limit_base_delay: float = 5.0
    request_timeout: float = 60.0
    direct_threshold_tokens: int = 2000
    chunk_max_tokens: int = 2000
    chunk_overlap_tokens: int = 100
    chunk_delay: float = 0.5
    corrective_retries: int = 2
    job_workers: int = 4
    job_store_path: str | None = None
    log_level: str = "INFO"
    cors_allowed_origins: list[str] = field(default_factory=lambda: _split_origins(DEFAULT_CORS_ORIGINS))

    @classmethod
    def from_env(cls) -> PipelineSettings:
        """Read settings from the environment; invalid numbers keep their defaults."""
        return cls(
            provider=os.getenv("AI_MODEL_PROVIDER", "gemini").strip().lower() or "gemini",
            model_name=os.getenv("AI_MODEL_NAME", "").strip() or None,
            max_attempts=_env_int("PIPELINE_MAX_ATTEMPTS", 3, minimum=1),
            retry_base_delay=_env_float("PIPELINE_RETRY_BASE_DELAY", 1.0),
            rate_limit_base_delay=_env_float("PIPELINE_RATE_LIMIT_BASE_DELAY", 5.0),
            request_timeout=_env_float("PIPELINE_REQUEST_TIMEOUT", 60.0, minimum=1.0),
            direct_threshold_tokens=_env_int("PIPELINE_DIRECT_THRESHOLD_TOKENS", 2000, minimum=1),
            chunk_max_tokens=_env_int("PIPELINE_CHUNK_MAX_TOKENS", 2000, minimum=1),
            chunk_overlap_tokens=_env_int("PIPELINE_CHUNK_OVERLAP_TOKENS", 100),
            chunk_delay=_env_float("PIPELINE_CHUNK_DELAY", 0.5),
            corrective_retries=_env_int("PIPELINE_CORRECTIVE_RETRIES", 2),
            job_workers=_env_int("PIPELINE_JOB_WORKERS", 4, minimum=1),
            job_store_path=os.getenv("PIPELINE_JOB_STORE_PATH", "").strip() or None,
            log_level=os.getenv("PIPELINE_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            cors_allowed_origins=_split_origins(
                os.getenv("PIPELINE_CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS)
            ),
        )


def configure_logging(level: str = "INFO") -> None:
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _logging_configured = True
