import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class JsonFormatter(logging.Formatter):
    """
    Formatter that outputs JSON strings for structured logging.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "line": record.lineno,
            "logger": record.name,
        }

        # Merge extra context (logger.info(..., extra={"context": {...}}))
        if hasattr(record, "context") and isinstance(record.context, dict):  # type: ignore
            log_record.update(record.context)  # type: ignore

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)


def _text_formatter() -> logging.Formatter:
    return logging.Formatter(
        "%(asctime)s [%(levelname)s] %(module)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> logging.Logger:
    """
    Configures the root logger based on environment variables.
    ENV: LOG_FORMAT (JSON | TEXT) - Defaults to TEXT if missing
    ENV: LOG_LEVEL (DEBUG | INFO | WARNING | ERROR) - Defaults to INFO

    Explicit arguments win over the environment.
    """
    logger = logging.getLogger()

    # idempotent configuration
    if logger.handlers:
        return logger

    fmt = (log_format or os.environ.get("LOG_FORMAT", "TEXT")).upper()
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    resolved = getattr(logging, level_name, logging.INFO)
    logger.setLevel(resolved)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(JsonFormatter() if fmt == "JSON" else _text_formatter())
    logger.addHandler(handler)

    # pyarrow/fsspec chatter during parquet writes
    logging.getLogger("fsspec").setLevel(logging.WARNING)

    return logger
