"""Structured logging configuration.

Sync runs log through ``get_logger(__name__, provider=..., run_id=...)`` so
every line of one run can be pulled out of the JSON log by provider and run id.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from pythonjsonlogger import jsonlogger

from aggregator.config import settings

# Present on every JSON record, null outside a provider sync or locked run
CONTEXT_FIELDS = ("provider", "run_id", "scope")

# Libraries that log every request or job execution at INFO
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "apscheduler.executors.default": logging.WARNING,
    "apscheduler.scheduler": logging.INFO,
}


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps records with source, level and catalog context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        for name in CONTEXT_FIELDS:
            log_record[name] = getattr(record, name, None)

        if record.funcName:
            log_record['function'] = record.funcName


class ContextFilter(logging.Filter):
    """Renders provider/run context as a short prefix for the console format."""

    def filter(self, record):
        parts = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        ]
        record.context = f"[{' '.join(parts)}] " if parts else ""
        return True


def setup_logging(base_dir: str | Path | None = None):
    """Configure logging for the application.

    Args:
        base_dir: Optional base directory to place the logs/ folder in.
                  If omitted, uses the current working directory.
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    # Console handler (human-readable for development)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.addFilter(ContextFilter())
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(context)s%(message)s")
    )
    root_logger.addHandler(console_handler)

    # JSON file handlers for log shipping; sync history is searchable by provider and run_id
    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    json_handler = logging.FileHandler(logs_dir / "aggregator.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "aggregator-error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    if settings.debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges its context into each record's extra fields."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger bound to catalog context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields such as provider='airalo', run_id='ab12' or
            scope='sync:3'; the fields in CONTEXT_FIELDS also appear as
            top-level JSON keys

    Returns:
        LoggerAdapter with context
    """
    logger = logging.getLogger(name)
    return LoggerAdapter(logger, context)
