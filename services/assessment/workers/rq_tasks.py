from __future__ import annotations

import logging

from rq import Queue

from .. import settings
from ..redis_clients import require_redis_client

_log = logging.getLogger(__name__)


def _container():
    from ..container import get_container

    return get_container()


def _get_queue() -> Queue:
    redis = require_redis_client(decode_responses=False)
    return Queue(settings.rq_queue_name(), connection=redis)


def require_redis() -> None:
    require_redis_client(decode_responses=False)


def enqueue_assessment_job(job_id: str) -> None:
    queue = _get_queue()
    queue.enqueue(run_assessment_job, job_id, job_timeout=settings.rq_job_timeout_sec())


def scan_pending_jobs() -> int:
    container = _container()
    container.recover_stale_jobs()
    count = 0
    for job_id in container.store.list_pending():
        enqueue_assessment_job(job_id)
        count += 1
    return count


def run_assessment_job(job_id: str) -> None:
    _container().process_job(job_id)
