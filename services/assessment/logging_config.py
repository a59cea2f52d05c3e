"""Logging setup for the API process and the RQ worker.

Environment variables:
    LOG_FORMAT  – "json" for one JSON object per line, anything else for text (default: "text")
    LOG_LEVEL   – root log level name (default: "INFO")

Records carry the request id of the HTTP request (or of the request that
submitted a background job). Assessment code attaches ``job_id``,
``assessment_type``, ``identity``, ``attempt`` and ``duration_ms`` through
``extra=``; the JSON formatter emits them as top-level keys.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

from .request_context import RequestIdFilter

_EXTRA_FIELDS = ("job_id", "assessment_type", "identity", "attempt", "duration_ms")
_TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] [%(request_id)s] %(message)s"
# Per-request chatter from HTTP clients drowns the assessment lines at INFO.
_NOISY_LOGGERS = ("urllib3", "httpx", "httpcore")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            payload["request_id"] = request_id
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _formatter(fmt: str) -> logging.Formatter:
    if fmt == "json":
        return _JsonFormatter()
    return logging.Formatter(_TEXT_FORMAT)


def configure_logging() -> None:
    """Replace the root handlers with one stderr handler per LOG_FORMAT/LOG_LEVEL."""
    fmt = os.getenv("LOG_FORMAT", "text").strip().lower()
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(_formatter(fmt))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
