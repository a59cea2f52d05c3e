from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .job_state_machine import COMPLETED, FAILED, PENDING, PROCESSING
from .job_store import Job, JobStore, is_stale_processing
from .pipeline import AssessmentPipeline
from .request_context import bound_request_id

_log = logging.getLogger(__name__)

_ERROR_MESSAGE_LIMIT = 200

WORKER_LOST_MESSAGE = "worker lost"


@dataclass(frozen=True)
class JobProcessingDeps:
    store: JobStore
    pipeline_for: Callable[[str], AssessmentPipeline]


def _fail(job_id: str, message: str, *, deps: JobProcessingDeps) -> Optional[Job]:
    failed = deps.store.transition(job_id, PROCESSING, FAILED, error_message=message[:_ERROR_MESSAGE_LIMIT])
    if failed is None:
        _log.warning("job %s left processing before it could be marked failed", job_id, extra={"job_id": job_id})
    return failed


def process_assessment_job(job_id: str, *, deps: JobProcessingDeps) -> Optional[Job]:
    """Run one pending job to a terminal state.

    Returns the terminal job, or ``None`` when the job is unknown or another
    writer (a cancel, a second worker) already moved it out of ``pending``.
    """
    claimed = deps.store.transition(job_id, PENDING, PROCESSING)
    if claimed is None:
        current = deps.store.get(job_id)
        _log.info(
            "skipping job %s: state=%s",
            job_id,
            current.state if current is not None else "missing",
            extra={"job_id": job_id},
        )
        return None

    with bound_request_id(claimed.request_id):
        _log.info(
            "processing job",
            extra={"job_id": job_id, "assessment_type": claimed.assessment_type, "identity": claimed.identity},
        )
        try:
            pipeline = deps.pipeline_for(claimed.assessment_type)
            result = pipeline.assess(claimed.domain_input)
        except Exception as exc:
            _log.error("job %s failed", job_id, exc_info=True, extra={"job_id": job_id})
            return _fail(job_id, str(exc) or exc.__class__.__name__, deps=deps)

        done = deps.store.transition(
            job_id,
            PROCESSING,
            COMPLETED,
            result=result.as_dict(),
            is_fallback=result.is_fallback,
        )
        if done is None:
            _log.warning("job %s changed state while processing", job_id, extra={"job_id": job_id})
        else:
            _log.info(
                "job completed fallback=%s",
                result.is_fallback,
                extra={"job_id": job_id, "assessment_type": claimed.assessment_type},
            )
        return done


def expire_stale_job(job: Job, *, store: JobStore, older_than_sec: float) -> Job:
    """Fail ``job`` if its worker stopped updating it; return the current record."""
    if not is_stale_processing(job, older_than_sec):
        return job
    failed = store.transition(job.job_id, PROCESSING, FAILED, error_message=WORKER_LOST_MESSAGE)
    if failed is not None:
        _log.warning("job %s abandoned by its worker; marked failed", job.job_id, extra={"job_id": job.job_id})
        return failed
    return store.get(job.job_id) or job


def recover_stale_jobs(*, store: JobStore, older_than_sec: float) -> int:
    """Fail every processing job older than ``older_than_sec``; returns how many moved."""
    recovered = 0
    for job_id in store.list_stale_processing(older_than_sec):
        # The compare-and-set loses to a worker that finishes in the meantime.
        if store.transition(job_id, PROCESSING, FAILED, error_message=WORKER_LOST_MESSAGE) is not None:
            recovered += 1
            _log.warning("job %s abandoned by its worker; marked failed", job_id, extra={"job_id": job_id})
    return recovered
