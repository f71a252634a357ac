"""Configuration module for helpcenter-kb.

Provides validated configuration models, YAML persistence and path resolution.
"""

from .paths import AppPaths, ensure_directories, get_paths
from .settings import (
    AppConfig,
    LoggingConfig,
    OllamaConfig,
    SourceConfig,
    SyncConfig,
    config_exists,
    default_config,
    load_config,
    save_config,
)

__all__ = [
    'AppConfig',
    'AppPaths',
    'LoggingConfig',
    'OllamaConfig',
    'SourceConfig',
    'SyncConfig',
    'config_exists',
    'default_config',
    'ensure_directories',
    'get_paths',
    'load_config',
    'save_config',
]
