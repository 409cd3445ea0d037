# Config
"""
Configuration for the scenebreak screenplay analysis system.

Values come from environment variables (a local .env file is honoured),
and any of them can be overridden by keyword when building Settings.
"""

import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from scenebreak.utils.errors import ConfigurationError

load_dotenv()

_MB = 1024 * 1024


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'")


def _env_float(name: str, default: float) -> float:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{value}'")


def _env_bool(name: str, default: bool) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self, **overrides: Any) -> None:
        # Logging
        self.log_level = _env_str("SCENEBREAK_LOG_LEVEL", "INFO").upper()
        self.dev_mode = _env_bool("SCENEBREAK_DEV_MODE", False)
        self.log_file = _env_str("SCENEBREAK_LOG_FILE")

        # Pre-submission validation
        self.min_document_bytes = _env_int("SCENEBREAK_MIN_DOCUMENT_BYTES", 100)
        self.max_document_bytes = _env_int("SCENEBREAK_MAX_DOCUMENT_BYTES", 10 * _MB)
        self.warn_document_bytes = _env_int("SCENEBREAK_WARN_DOCUMENT_BYTES", 5 * _MB)
        self.min_content_chars = _env_int("SCENEBREAK_MIN_CONTENT_CHARS", 100)
        self.recommended_min_scenes = _env_int("SCENEBREAK_RECOMMENDED_MIN_SCENES", 3)

        # Parsing
        self.min_scene_chars = _env_int("SCENEBREAK_MIN_SCENE_CHARS", 5)

        # Extraction queue
        self.extraction_max_attempts = _env_int("SCENEBREAK_EXTRACTION_MAX_ATTEMPTS", 3)
        self.extraction_backoff_base_ms = _env_int("SCENEBREAK_EXTRACTION_BACKOFF_BASE_MS", 1000)
        self.extraction_backoff_factor = _env_float("SCENEBREAK_EXTRACTION_BACKOFF_FACTOR", 2.0)
        self.extraction_workers = _env_int("SCENEBREAK_EXTRACTION_WORKERS", 1)
        self.extraction_use_processes = _env_bool("SCENEBREAK_EXTRACTION_USE_PROCESSES", False)
        self.job_retention_seconds = _env_int("SCENEBREAK_JOB_RETENTION_SECONDS", 3600)
        self.job_purge_interval_seconds = _env_int("SCENEBREAK_JOB_PURGE_INTERVAL_SECONDS", 300)

        # Scene analysis
        self.scene_max_attempts = _env_int("SCENEBREAK_SCENE_MAX_ATTEMPTS", 3)
        self.scene_auto_retry = _env_bool("SCENEBREAK_SCENE_AUTO_RETRY", True)
        self.scene_retry_wait_seconds = _env_float("SCENEBREAK_SCENE_RETRY_WAIT_SECONDS", 0.0)
        self.analysis_timeout_seconds = _env_float("SCENEBREAK_ANALYSIS_TIMEOUT_SECONDS", 60.0)
        self.analysis_service_url = _env_str("SCENEBREAK_ANALYSIS_SERVICE_URL")
        self.analysis_api_key = _env_str("SCENEBREAK_ANALYSIS_API_KEY")
        self.openai_api_key = _env_str("OPENAI_API_KEY")
        self.analysis_model = _env_str("SCENEBREAK_ANALYSIS_MODEL", "gpt-4o-mini")
        self.analysis_max_tokens = _env_int("SCENEBREAK_ANALYSIS_MAX_TOKENS", 4000)

        # Consumption ledger
        unlimited = _env_str("SCENEBREAK_UNLIMITED_CALLERS", "")
        self.unlimited_callers = frozenset(c.strip() for c in unlimited.split(",") if c.strip())

        # Progress
        self.default_scene_time_ms = _env_int("SCENEBREAK_DEFAULT_SCENE_TIME_MS", 90_000)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigurationError(f"Unknown setting '{key}'")
            setattr(self, key, value)

        self._validate()

    def _validate(self) -> None:
        if not (self.min_document_bytes < self.warn_document_bytes < self.max_document_bytes):
            raise ConfigurationError(
                "document size bounds must satisfy min < warn < max",
                {
                    "min_document_bytes": self.min_document_bytes,
                    "warn_document_bytes": self.warn_document_bytes,
                    "max_document_bytes": self.max_document_bytes,
                },
            )
        if self.extraction_max_attempts < 1:
            raise ConfigurationError("extraction_max_attempts must be at least 1")
        if not 1 <= self.scene_max_attempts <= 3:
            raise ConfigurationError("scene_max_attempts must be between 1 and 3")
        if self.extraction_workers < 1:
            raise ConfigurationError("extraction_workers must be at least 1")
        if self.analysis_timeout_seconds <= 0:
            raise ConfigurationError("analysis_timeout_seconds must be positive")

    def get_log_file_path(self) -> Optional[Path]:
        return Path(self.log_file) if self.log_file else None


# Singleton instance
_settings = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
