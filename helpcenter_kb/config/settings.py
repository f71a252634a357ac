"""Configuration models and YAML persistence for helpcenter-kb.

The on-disk file is plain YAML; everything is validated through pydantic
before any other component sees it.
"""

import logging
import os
import re
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from helpcenter_kb.config.paths import get_paths
from helpcenter_kb.errors import ConfigError

logger = logging.getLogger(__name__)

SOURCE_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


def _normalize_http_url(value: str) -> str:
    value = value.strip()
    if not re.match(r"^https?://[^/\s]+", value):
        raise ValueError("must be an http(s) URL")
    return value.rstrip("/")


class OllamaConfig(BaseModel):
    """Embedding service configuration."""
    base_url: str = Field(default="http://localhost:11434", description="Ollama base URL")
    model: str = Field(default="nomic-embed-text", min_length=1, description="Embedding model name")
    dimension: int = Field(default=768, gt=0, description="Expected embedding dimension")
    request_timeout: float = Field(default=60.0, gt=0, description="Per-request timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        return _normalize_http_url(value)


class SyncConfig(BaseModel):
    """Chunking, concurrency and retry settings for a sync pass."""
    chunk_size: int = Field(default=500, gt=0, description="Target chunk size in tokens")
    chunk_overlap: int = Field(default=50, ge=0, description="Overlap between chunks in tokens")
    embedding_concurrency: int = Field(default=5, ge=1, description="Embedding calls in flight")
    page_delay: float = Field(default=0.1, ge=0, description="Pause between page requests in seconds")
    max_retries: int = Field(default=5, ge=0, description="Retries per request")
    initial_retry_delay: float = Field(default=1.0, ge=0, description="First backoff delay in seconds")
    max_retry_delay: float = Field(default=60.0, ge=0, description="Backoff ceiling in seconds")
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")

    @model_validator(mode="after")
    def _check_overlap(self) -> "SyncConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


class SourceConfig(BaseModel):
    """One configured help-center collection."""
    id: str = Field(..., description="Stable slug")
    name: str = Field(..., min_length=1)
    base_url: str
    locale: str = Field(default="en-us", min_length=2)
    enabled: bool = True

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not SOURCE_ID_PATTERN.match(value):
            raise ValueError("must be a lowercase slug (letters, digits, '-' and '_')")
        return value

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        return _normalize_http_url(value)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    json_format: bool = Field(default=False, alias="json")
    file: Optional[str] = None

    model_config = {"populate_by_name": True}

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return value


class AppConfig(BaseModel):
    """Complete validated configuration."""
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    sources: List[SourceConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _check_unique_sources(self) -> "AppConfig":
        seen = set()
        for source in self.sources:
            if source.id in seen:
                raise ValueError(f"duplicate source id: {source.id}")
            seen.add(source.id)
        return self

    def apply_env(self) -> "AppConfig":
        """Return a copy with environment overrides applied."""
        ollama = self.ollama.model_copy()
        log_config = self.logging.model_copy()

        if os.getenv("KB_OLLAMA_BASE_URL"):
            ollama = OllamaConfig(**{**ollama.model_dump(), "base_url": os.environ["KB_OLLAMA_BASE_URL"]})
        if os.getenv("KB_OLLAMA_MODEL"):
            ollama = OllamaConfig(**{**ollama.model_dump(), "model": os.environ["KB_OLLAMA_MODEL"]})
        if os.getenv("KB_LOG_LEVEL"):
            log_config = LoggingConfig(**{**log_config.model_dump(), "level": os.environ["KB_LOG_LEVEL"]})

        return self.model_copy(update={"ollama": ollama, "logging": log_config})


def _resolve(path: Optional[Path]) -> Path:
    return Path(path) if path else get_paths().config_file


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for issue in error.errors():
        location = ".".join(str(part) for part in issue["loc"]) or "(root)"
        lines.append(f"  - {location}: {issue['msg']}")
    return "\n".join(lines)


def default_config() -> AppConfig:
    return AppConfig()


def config_exists(path: Optional[Path] = None) -> bool:
    return _resolve(path).exists()


def load_config(path: Optional[Path] = None, apply_env: bool = True) -> AppConfig:
    """Load and validate the configuration file.

    Raises:
        ConfigError: if the file is missing, is not valid YAML, or fails validation
    """
    config_path = _resolve(path)

    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found at {config_path}\n\n"
            f"Run 'kb init' to create one."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")

    try:
        config = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration at {config_path}\n\n{_format_validation_error(e)}"
        ) from e

    logger.debug(f"Loaded configuration from {config_path} ({len(config.sources)} sources)")
    return config.apply_env() if apply_env else config


def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    """Validate and write the configuration as YAML."""
    config_path = _resolve(path)
    validated = AppConfig.model_validate(config.model_dump(by_alias=True))

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(validated.model_dump(by_alias=True), f, sort_keys=False)

    logger.info(f"Configuration written to {config_path}")
    return config_path
