from __future__ import annotations

import logging
import os

from rq import Worker

from .. import settings
from ..logging_config import configure_logging
from ..redis_clients import get_redis_client
from .rq_tasks import scan_pending_jobs

_log = logging.getLogger(__name__)


def main() -> None:
    os.environ.setdefault("JOB_QUEUE_BACKEND", "rq")
    configure_logging()
    if settings.rq_scan_pending_on_start():
        _log.info("re-enqueued %d pending assessment jobs", scan_pending_jobs())

    redis = get_redis_client(decode_responses=False)
    worker = Worker([settings.rq_queue_name()], connection=redis)
    worker.work()


if __name__ == "__main__":
    main()
