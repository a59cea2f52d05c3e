from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, List, Optional

import pytest

from llm_gateway import CompletionOptions
from services.assessment.container import AssessmentContainer, build_container
from services.assessment.job_store import FileJobStore
from services.assessment.pipeline import RetryPolicy
from services.assessment.profiles import load_profiles
from services.assessment.queue_backend import InlineQueueBackend
from services.assessment.rate_limit import MemoryWindowStore
from services.assessment.workers.inline_worker import drain_inline_jobs

RD_INPUT = {
    "query": "Does our project qualify?",
    "companyName": "Acme Robotics",
    "companyDescription": "We built a novel adaptive gripper control algorithm.",
}

RD_RESULT = {
    "eligibilityScore": 82,
    "eligible": True,
    "reasoning": "Clear technological uncertainty was resolved.",
    "recommendations": ["Keep test logs"],
    "nextSteps": ["Prepare the technical narrative"],
    "estimatedValue": "GBP 40k",
}


class FakeModelClient:
    """Scripted stand-in for ``llm_gateway.ModelClient``."""

    def __init__(self, responses: Optional[List[Any]] = None, default: Optional[str] = None):
        self.responses = list(responses or [])
        self.default = default if default is not None else json.dumps(RD_RESULT)
        self.calls: List[dict] = []

    def complete(self, system_prompt: str, user_prompt: str, options: Optional[CompletionOptions] = None) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt, "options": options})
        if not self.responses:
            return self.default
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeClock:
    def __init__(self, now_ms: int = 0):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def fake_model() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1_000_000)


@pytest.fixture
def make_container(tmp_path: Path, clock: FakeClock) -> Callable[..., AssessmentContainer]:
    def _make(model_client: Any = None, **kwargs: Any) -> AssessmentContainer:
        store = kwargs.pop("store", None)
        window_store = kwargs.pop("window_store", None)
        return build_container(
            profiles=kwargs.pop("profiles", None) or load_profiles(path=""),
            store=store if store is not None else FileJobStore(tmp_path / "jobs"),
            window_store=window_store if window_store is not None else MemoryWindowStore(),
            model_client=model_client if model_client is not None else FakeModelClient(),
            retry=kwargs.pop("retry", None) or RetryPolicy(max_attempts=2, base_backoff_sec=0.0),
            clock=kwargs.pop("clock", clock),
            autostart_workers=False,
            queue_factory=lambda c: InlineQueueBackend(c.inline_worker_deps(), autostart_threads=False),
            **kwargs,
        )

    return _make


def drain(container: AssessmentContainer) -> int:
    backend = container.queue()
    assert isinstance(backend, InlineQueueBackend)
    return drain_inline_jobs(deps=backend.deps)


@pytest.fixture
def run_queued() -> Callable[[AssessmentContainer], int]:
    return drain


@pytest.fixture
def make_model() -> Callable[..., FakeModelClient]:
    return FakeModelClient


@pytest.fixture
def rd_input() -> dict:
    return dict(RD_INPUT)
