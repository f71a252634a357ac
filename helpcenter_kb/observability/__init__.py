"""Observability package for helpcenter-kb."""

from .logging import ColoredFormatter, JSONFormatter, configure_logging, get_logger, setup_logging

__all__ = [
    'ColoredFormatter',
    'JSONFormatter',
    'configure_logging',
    'get_logger',
    'setup_logging',
]
