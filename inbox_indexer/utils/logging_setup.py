"""
Logging Setup Module
Console/file handlers plus colored and JSON formatters
"""

import copy
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .colors import Colors


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class ColoredFormatter(logging.Formatter):
    """
    Adds colors to log levels and highlights pipeline milestones.
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.BLUE,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED
    }

    def format(self, record):
        # Work on a copy so the file handler never sees ANSI codes
        record = copy.copy(record)

        color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"

        if isinstance(record.msg, str):
            if "Connection ready" in record.msg or "Bulk indexed" in record.msg:
                record.msg = f"{Colors.GREEN}{record.msg}{Colors.RESET}"
            elif "Health check" in record.msg:
                record.msg = f"{Colors.GREY}{record.msg}{Colors.RESET}"
            elif "permanently failed" in record.msg:
                record.msg = f"{Colors.MAGENTA}{Colors.BOLD}{record.msg}{Colors.RESET}"

        return super().format(record)


class JSONFormatter(logging.Formatter):
    """
    Outputs log records as JSON for log aggregation tools.

    Extra context can be attached with
    logger.info("msg", extra={"extra_fields": {...}}).
    """

    # Fields that might contain sensitive data - never log their full values
    SENSITIVE_FIELDS = {
        'password', 'token', 'api_key', 'secret', 'credential', 'app_password'
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update({
                k: self._sanitize_value(k, v)
                for k, v in record.extra_fields.items()
            })

        return json.dumps(log_data, default=str)

    def _sanitize_value(self, key: str, value: Any) -> Any:
        """Replace values of credential-like keys with a marker"""
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in self.SENSITIVE_FIELDS):
            return "[REDACTED]"
        return value


def configure_logging(log_level: str, log_file: str, log_format: str = "text") -> None:
    """
    Configure root logging with a file handler and a stdout handler

    Args:
        log_level: Level name (falls back to INFO if unknown)
        log_file: Path of the log file; parent directories are created
        log_format: "text" for colored console output, "json" for structured
    """
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    level_name = str(log_level).upper()
    level = logging._nameToLevel.get(level_name, logging.INFO)

    file_handler = logging.FileHandler(log_file)
    console_handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        file_handler.setFormatter(JSONFormatter())
        console_handler.setFormatter(JSONFormatter())
    else:
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        console_handler.setFormatter(ColoredFormatter(LOG_FORMAT))

    logging.basicConfig(level=level, handlers=[file_handler, console_handler], force=True)

    if level_name not in logging._nameToLevel:
        logging.getLogger("MailIndexingPipeline").warning(
            "Invalid log level '%s'; defaulting to INFO", log_level
        )
