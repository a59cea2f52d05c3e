from __future__ import annotations

from typing import Any, Dict


class AssessmentError(Exception):
    """Error that reaches the HTTP layer as a non-200 response."""

    status_code = 500

    def __init__(self, detail: str, *, status_code: int | None = None):
        super().__init__(detail)
        if status_code is not None:
            self.status_code = int(status_code)
        self.detail = str(detail or "assessment_error")

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.detail}


class RateLimited(AssessmentError):
    status_code = 429

    def __init__(self, retry_after_ms: int, detail: str = ""):
        self.retry_after_ms = max(0, int(retry_after_ms))
        super().__init__(detail or "Rate limit exceeded. Please wait before submitting another assessment.")

    @property
    def retry_after_sec(self) -> int:
        return max(1, -(-self.retry_after_ms // 1000))

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.detail, "retryAfterMs": self.retry_after_ms}


class NotFound(AssessmentError):
    status_code = 404

    def __init__(self, detail: str = "Job not found"):
        super().__init__(detail)


class BadRequest(AssessmentError):
    status_code = 400


class MethodNotAllowed(AssessmentError):
    status_code = 405

    def __init__(self, detail: str = "Method not allowed"):
        super().__init__(detail)


class InvalidTransition(ValueError):
    """A job state change that the lifecycle does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(f"invalid_job_transition:{current}->{target}")
        self.current = current
        self.target = target
