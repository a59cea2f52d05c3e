"""Request ID propagation via ContextVar + logging filter.

Usage:
    - The middleware in app.py sets the request_id for each request.
    - The logging filter attaches request_id to every log record.
    - Response header ``x-request-id`` is added automatically.
    - Background jobs reuse the submitting request's id when one was recorded.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="")


def new_request_id() -> str:
    return uuid.uuid4().hex[:16]


@contextmanager
def bound_request_id(request_id: str) -> Iterator[None]:
    token = REQUEST_ID.set(str(request_id or ""))
    try:
        yield
    finally:
        REQUEST_ID.reset(token)


class RequestIdFilter(logging.Filter):
    """Inject ``request_id`` into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = REQUEST_ID.get("") or "-"  # type: ignore[attr-defined]
        return True
