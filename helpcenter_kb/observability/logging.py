from __future__ import annotations
import logging
import sys
import json
from typing import Optional
from datetime import datetime, timezone
from pathlib import Path

from helpcenter_kb.config.settings import LoggingConfig

PACKAGE_LOGGER = "helpcenter_kb"

# Loggers that are chatty at INFO; the MCP SDK logs every request.
NOISY_LOGGERS = ("aiohttp", "asyncio", "mcp")

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message'
}


def _short_name(name: str) -> str:
    """helpcenter_kb.pipelines.sync -> pipelines.sync"""
    if name.startswith(PACKAGE_LOGGER + "."):
        return name[len(PACKAGE_LOGGER) + 1:]
    return name


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log files and log shippers."""

    def __init__(self, service_name: str = "helpcenter-kb"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # e.g. logger.info(..., extra={"source_id": "acme"})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Compact console lines on stderr with a colored level tag."""

    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[1;31m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = f"{record.levelname:8}"
        if self.use_colors and record.levelname in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelname]}{level}{self.RESET}"

        message = f"{timestamp} {level} [{_short_name(record.name)}] {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


def setup_logging(
    level: str = "INFO",
    service_name: str = "helpcenter-kb",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Setup logging configuration.

    Console output goes to stderr: stdout belongs to command output and to the
    MCP stdio transport. Calling this again replaces the previous handlers.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Name of the service for structured logging
        log_file: Optional file path for file logging, always written as JSON
        use_json: Whether to use JSON formatting on the console
        use_colors: Whether to color the level tag when stderr is a terminal
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    if use_json:
        console_handler.setFormatter(JSONFormatter(service_name))
    else:
        console_handler.setFormatter(ColoredFormatter(use_colors and sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(JSONFormatter(service_name))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(settings: LoggingConfig, verbose: bool = False,
                      level: Optional[str] = None, log_file: Optional[str] = None,
                      use_colors: bool = True) -> None:
    """Apply the ``logging`` section of the config file.

    ``level`` overrides the configured level (interactive commands pass
    WARNING to keep the terminal quiet); ``verbose`` forces DEBUG. A log file
    from the config wins over the ``log_file`` fallback.
    """
    setup_logging(
        level="DEBUG" if verbose else (level or settings.level),
        log_file=settings.file or log_file,
        use_json=settings.json_format,
        use_colors=use_colors,
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)
