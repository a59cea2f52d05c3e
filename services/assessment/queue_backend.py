from __future__ import annotations

import logging
from typing import Callable, Protocol

from . import settings
from .workers.inline_worker import (
    InlineWorkerDeps,
    enqueue_job_inline,
    scan_pending_jobs_inline,
    start_inline_worker,
    stop_inline_worker,
    worker_running,
)

_log = logging.getLogger(__name__)


class QueueBackend(Protocol):
    name: str

    def enqueue_assessment_job(self, job_id: str) -> None: ...
    def scan_pending_jobs(self) -> int: ...
    def healthy(self) -> bool: ...
    def start(self) -> None: ...
    def stop(self) -> None: ...


class InlineQueueBackend:
    """In-process worker threads; jobs survive restarts only via the pending rescan."""

    name = "inline"

    def __init__(self, deps: InlineWorkerDeps, *, autostart_threads: bool = True):
        self.deps = deps
        self.autostart_threads = autostart_threads

    def enqueue_assessment_job(self, job_id: str) -> None:
        enqueue_job_inline(job_id, deps=self.deps)

    def scan_pending_jobs(self) -> int:
        return scan_pending_jobs_inline(deps=self.deps)

    def healthy(self) -> bool:
        return worker_running(self.deps.state) or not self.autostart_threads

    def start(self) -> None:
        if self.autostart_threads:
            start_inline_worker(deps=self.deps)

    def stop(self) -> None:
        if self.autostart_threads:
            stop_inline_worker(deps=self.deps)


def _rq_tasks():
    from .workers import rq_tasks

    return rq_tasks


class RqQueueBackend:
    name = "rq"

    def enqueue_assessment_job(self, job_id: str) -> None:
        _rq_tasks().enqueue_assessment_job(job_id)

    def scan_pending_jobs(self) -> int:
        return _rq_tasks().scan_pending_jobs()

    def healthy(self) -> bool:
        try:
            _rq_tasks().require_redis()
        except RuntimeError:
            return False
        return True

    def start(self) -> None:
        _rq_tasks().require_redis()

    def stop(self) -> None:
        return


def rq_enabled() -> bool:
    return settings.job_queue_backend() in {"rq", "redis", "redis-rq"}


def _inline_fallback_allowed() -> bool:
    if settings.is_pytest() or not settings.is_production():
        return True
    return settings.allow_inline_fallback_in_prod()


def get_queue_backend(*, inline_backend_factory: Callable[[], QueueBackend]) -> QueueBackend:
    if not rq_enabled():
        return inline_backend_factory()
    backend = RqQueueBackend()
    try:
        backend.start()
    except RuntimeError as exc:
        if not _inline_fallback_allowed():
            raise RuntimeError("RQ/Redis backend unavailable; inline fallback disabled in production") from exc
        _log.warning("RQ/Redis backend unavailable; falling back to inline backend (dev mode)")
        return inline_backend_factory()
    return backend
