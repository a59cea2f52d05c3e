from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from llm_gateway import ModelClient

from . import settings
from .job_controller import JobController, JobControllerDeps
from .job_processing_service import JobProcessingDeps, process_assessment_job, recover_stale_jobs
from .job_store import FileJobStore, Job, JobStore, RedisJobStore
from .pipeline import AssessmentPipeline, CompletionClient, RetryPolicy
from .profiles import AssessmentProfile, load_profiles
from .queue_backend import InlineQueueBackend, QueueBackend, get_queue_backend
from .rate_limit import MemoryWindowStore, RateLimiter, RedisWindowStore, WindowStore
from .redis_clients import get_redis_client
from .workers.inline_worker import InlineWorkerDeps, InlineWorkerState

_log = logging.getLogger(__name__)


@dataclass
class AssessmentContainer:
    profiles: Dict[str, AssessmentProfile]
    store: JobStore
    window_store: WindowStore
    model_client: Optional[CompletionClient]
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    redis_client: Any = None
    clock: Optional[Callable[[], int]] = None
    default_assessment_type: str = "rd_assessment"
    autostart_workers: bool = True
    queue_factory: Optional[Callable[["AssessmentContainer"], QueueBackend]] = None
    worker_state: InlineWorkerState = field(default_factory=InlineWorkerState)
    _pipelines: Dict[str, AssessmentPipeline] = field(default_factory=dict)
    _queue: Optional[QueueBackend] = None
    _lock: Any = field(default_factory=threading.Lock)

    def pipeline_for(self, assessment_type: str) -> AssessmentPipeline:
        with self._lock:
            pipeline = self._pipelines.get(assessment_type)
            if pipeline is None:
                profile = self.profiles[assessment_type]
                limiter_kwargs: Dict[str, Any] = {}
                if self.clock is not None:
                    limiter_kwargs["clock"] = self.clock
                limiter = RateLimiter(
                    self.window_store,
                    window_size_ms=profile.window_ms,
                    max_requests=profile.max_requests,
                    namespace=assessment_type,
                    **limiter_kwargs,
                )
                pipeline = AssessmentPipeline(
                    profile=profile,
                    limiter=limiter,
                    model_client=self.model_client,
                    retry=self.retry,
                )
                self._pipelines[assessment_type] = pipeline
            return pipeline

    def process_job(self, job_id: str) -> Optional[Job]:
        return process_assessment_job(
            job_id,
            deps=JobProcessingDeps(store=self.store, pipeline_for=self.pipeline_for),
        )

    def recover_stale_jobs(self) -> int:
        return recover_stale_jobs(store=self.store, older_than_sec=settings.stale_job_after_sec())

    def inline_worker_deps(self) -> InlineWorkerDeps:
        return InlineWorkerDeps(
            state=self.worker_state,
            process_job=self.process_job,
            list_pending=self.store.list_pending,
            pool_size=settings.inline_worker_pool_size(),
            recover_stale=self.recover_stale_jobs,
        )

    def _inline_backend(self) -> QueueBackend:
        return InlineQueueBackend(self.inline_worker_deps(), autostart_threads=self.autostart_workers)

    def queue(self) -> QueueBackend:
        with self._lock:
            if self._queue is None:
                if self.queue_factory is not None:
                    self._queue = self.queue_factory(self)
                else:
                    self._queue = get_queue_backend(inline_backend_factory=self._inline_backend)
                _log.info("assessment queue backend: %s", self._queue.name)
            return self._queue

    def controller(self) -> JobController:
        return JobController(
            JobControllerDeps(
                store=self.store,
                queue=self.queue,
                profiles=self.profiles,
                pipeline_for=self.pipeline_for,
                default_assessment_type=self.default_assessment_type,
                stale_after_sec=settings.stale_job_after_sec(),
            )
        )

    def start(self) -> None:
        self.queue().start()

    def stop(self) -> None:
        if self._queue is not None:
            self._queue.stop()


def _model_client_from_env() -> Optional[ModelClient]:
    try:
        return ModelClient.from_env()
    except ValueError:
        _log.warning("model API key missing; every assessment will use the fallback result")
        return None


def build_container(
    *,
    profiles: Optional[Mapping[str, AssessmentProfile]] = None,
    store: Optional[JobStore] = None,
    window_store: Optional[WindowStore] = None,
    model_client: Any = "env",
    retry: Optional[RetryPolicy] = None,
    clock: Optional[Callable[[], int]] = None,
    autostart_workers: bool = True,
    queue_factory: Optional[Callable[[AssessmentContainer], QueueBackend]] = None,
) -> AssessmentContainer:
    """Assemble the service from configuration; explicit arguments win over env."""
    redis_client = None
    if store is None or window_store is None:
        if "redis" in {settings.rate_limit_backend(), settings.job_store_backend()}:
            redis_client = get_redis_client()

    if window_store is None:
        if settings.rate_limit_backend() == "redis":
            window_store = RedisWindowStore(redis_client)
        else:
            window_store = MemoryWindowStore(max_buckets=settings.rate_limit_max_buckets())

    if store is None:
        if settings.job_store_backend() == "redis":
            store = RedisJobStore(redis_client, ttl_sec=settings.job_ttl_sec())
        else:
            store = FileJobStore(settings.job_store_dir())

    return AssessmentContainer(
        profiles=dict(profiles if profiles is not None else load_profiles()),
        store=store,
        window_store=window_store,
        model_client=_model_client_from_env() if model_client == "env" else model_client,
        retry=retry or RetryPolicy.from_env(),
        redis_client=redis_client,
        clock=clock,
        default_assessment_type=settings.default_assessment_type(),
        autostart_workers=autostart_workers,
        queue_factory=queue_factory,
    )


_CONTAINER: Optional[AssessmentContainer] = None
_CONTAINER_LOCK = threading.Lock()


def get_container() -> AssessmentContainer:
    global _CONTAINER
    with _CONTAINER_LOCK:
        if _CONTAINER is None:
            _CONTAINER = build_container()
        return _CONTAINER


def reset_container() -> None:
    global _CONTAINER
    with _CONTAINER_LOCK:
        _CONTAINER = None
