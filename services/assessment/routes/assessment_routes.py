from __future__ import annotations

from typing import Any, Callable

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..api_models import AssessRequest, CancelRequest
from ..errors import BadRequest
from ..job_controller import JobController


def register_assessment_routes(router: APIRouter, get_controller: Callable[[], JobController]) -> None:
    @router.post("/assess")
    async def assess(req: AssessRequest) -> Any:
        # The model call blocks; keep it off the event loop.
        outcome = await run_in_threadpool(
            get_controller().assess_sync, req.identity, req.domainInput, req.assessmentType
        )
        return {
            "result": outcome.result.as_dict(),
            "isFallback": outcome.result.is_fallback,
            "jobId": outcome.job_id,
            "assessmentType": outcome.assessment_type,
            "timestamp": outcome.timestamp,
        }

    @router.post("/assess-async")
    async def assess_async(req: AssessRequest) -> Any:
        job = await run_in_threadpool(get_controller().submit, req.identity, req.domainInput, req.assessmentType)
        return JSONResponse(status_code=202, content={"jobId": job.job_id, "status": "processing"})

    @router.get("/assess-status")
    async def assess_status(
        jobId: str = Query(default="", max_length=100),
        identity: str = Query(default="", max_length=200),
    ) -> Any:
        if not jobId.strip():
            raise BadRequest("jobId is required")
        return await run_in_threadpool(get_controller().status, identity, jobId)

    @router.post("/assess-cancel")
    async def assess_cancel(req: CancelRequest) -> Any:
        return await run_in_threadpool(get_controller().cancel, req.identity, req.jobId)

