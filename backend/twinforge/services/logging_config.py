"""Structured logging configuration for the TwinForge backend."""
import logging
import json
import sys
from datetime import datetime, timezone

# LogRecord extras copied into the JSON payload when present
CONTEXT_FIELDS = ("scan_id", "user_id", "stage", "request_id", "duration_ms", "http_status")

# Third-party loggers that are too chatty at INFO (litellm logs request bodies)
_QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "LiteLLM", "litellm", "sqlalchemy.engine")


class ScanLogFormatter(logging.Formatter):
    """One JSON object per line, with the scan context fields flattened in."""

    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(
            {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Route all logging to stdout.

    json_output=False gives a plain text format for local runs (LOG_FORMAT=text).
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        ScanLogFormatter() if json_output
        else logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    )

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = [handler]

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
