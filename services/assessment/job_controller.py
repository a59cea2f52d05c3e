from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .errors import AssessmentError, BadRequest, NotFound
from .job_state_machine import COMPLETED, FAILED, PENDING
from .job_processing_service import expire_stale_job
from .job_store import Job, JobStore, new_job, utc_now_iso
from .pipeline import AssessmentPipeline
from .profiles import AssessmentProfile
from .queue_backend import QueueBackend
from .request_context import REQUEST_ID
from .result_schema import ValidatedResult

_log = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"


@dataclass(frozen=True)
class JobControllerDeps:
    store: JobStore
    queue: Callable[[], QueueBackend]
    profiles: Mapping[str, AssessmentProfile]
    pipeline_for: Callable[[str], AssessmentPipeline]
    default_assessment_type: str = "rd_assessment"
    stale_after_sec: float = 300.0
    now_iso: Callable[[], str] = utc_now_iso


@dataclass(frozen=True)
class SyncAssessment:
    result: ValidatedResult
    job_id: Optional[str]
    assessment_type: str
    timestamp: str


def status_payload(job: Job) -> Dict[str, Any]:
    """Client-facing view of a job; pending and processing both read as processing."""
    payload: Dict[str, Any] = {"jobId": job.job_id, "assessmentType": job.assessment_type}
    if job.state == COMPLETED:
        payload.update(status="completed", result=job.result or {}, isFallback=job.is_fallback)
    elif job.state == FAILED:
        payload.update(status="failed", message=job.error_message or "assessment failed")
    else:
        payload["status"] = "processing"
    payload["updatedAt"] = job.updated_at
    return payload


class JobController:
    def __init__(self, deps: JobControllerDeps):
        self.deps = deps

    def _prepare(
        self,
        identity: Any,
        domain_input: Any,
        assessment_type: Optional[str],
    ) -> Tuple[str, AssessmentProfile, Dict[str, Any]]:
        ident = str(identity or "").strip()
        if not ident:
            raise BadRequest("identity is required")
        if not isinstance(domain_input, Mapping):
            raise BadRequest("domainInput must be an object")
        type_name = str(assessment_type or "").strip() or self.deps.default_assessment_type
        profile = self.deps.profiles.get(type_name)
        if profile is None:
            raise BadRequest(f"Unknown assessment type: {type_name}")
        missing = profile.missing_fields(domain_input)
        if missing:
            raise BadRequest(f"Missing required fields: {', '.join(missing)}")
        return ident, profile, dict(domain_input)

    def _owned_job(self, identity: Any, job_id: Any) -> Job:
        ident = str(identity or "").strip()
        job = self.deps.store.get(str(job_id or "").strip())
        # Another identity's job is indistinguishable from a missing one.
        if job is None or not ident or job.identity != ident:
            raise NotFound()
        # A worker that died mid-job leaves it processing; report it failed instead.
        return expire_stale_job(job, store=self.deps.store, older_than_sec=self.deps.stale_after_sec)

    def submit(self, identity: Any, domain_input: Any, assessment_type: Optional[str] = None) -> Job:
        ident, profile, data = self._prepare(identity, domain_input, assessment_type)
        self.deps.pipeline_for(profile.assessment_type).admit(ident)
        job = self.deps.store.create(
            new_job(ident, profile.assessment_type, data, request_id=REQUEST_ID.get(""))
        )
        try:
            self.deps.queue().enqueue_assessment_job(job.job_id)
        except Exception as exc:
            _log.error("failed to enqueue job %s", job.job_id, exc_info=True, extra={"job_id": job.job_id})
            self.deps.store.transition(job.job_id, PENDING, FAILED, error_message="enqueue failed")
            raise AssessmentError("Failed to schedule assessment", status_code=503) from exc
        _log.info(
            "job submitted",
            extra={"job_id": job.job_id, "assessment_type": job.assessment_type, "identity": ident},
        )
        return job

    def assess_sync(self, identity: Any, domain_input: Any, assessment_type: Optional[str] = None) -> SyncAssessment:
        ident, profile, data = self._prepare(identity, domain_input, assessment_type)
        pipeline = self.deps.pipeline_for(profile.assessment_type)
        pipeline.admit(ident)
        result = pipeline.assess(data)
        timestamp = self.deps.now_iso()

        job_id: Optional[str] = None
        record = new_job(ident, profile.assessment_type, data, request_id=REQUEST_ID.get(""))
        try:
            self.deps.store.create(
                replace(
                    record,
                    state=COMPLETED,
                    result=result.as_dict(),
                    is_fallback=result.is_fallback,
                    updated_at=timestamp,
                )
            )
            job_id = record.job_id
        except Exception:
            _log.error("failed to persist sync assessment", exc_info=True, extra={"identity": ident})
        return SyncAssessment(result=result, job_id=job_id, assessment_type=profile.assessment_type, timestamp=timestamp)

    def status(self, identity: Any, job_id: Any) -> Dict[str, Any]:
        return status_payload(self._owned_job(identity, job_id))

    def cancel(self, identity: Any, job_id: Any) -> Dict[str, Any]:
        job = self._owned_job(identity, job_id)
        cancelled = False
        if job.state == PENDING:
            updated = self.deps.store.transition(job.job_id, PENDING, FAILED, error_message=CANCELLED_MESSAGE)
            if updated is not None:
                job, cancelled = updated, True
            else:
                # A worker claimed it first; report whatever it is now.
                job = self.deps.store.get(job.job_id) or job
        payload = status_payload(job)
        payload["cancelled"] = cancelled
        return payload
