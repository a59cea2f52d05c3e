from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional

_log = logging.getLogger(__name__)


@dataclass
class InlineWorkerState:
    job_queue: Deque[str] = field(default_factory=deque)
    job_lock: Any = field(default_factory=threading.Lock)
    job_event: Any = field(default_factory=threading.Event)
    stop_event: Any = field(default_factory=threading.Event)
    threads: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class InlineWorkerDeps:
    state: InlineWorkerState
    process_job: Callable[[str], Any]
    list_pending: Callable[[], List[str]]
    pool_size: int = 2
    recover_stale: Callable[[], int] = lambda: 0
    sleep: Callable[[float], None] = time.sleep
    thread_factory: Callable[..., Any] = threading.Thread


def enqueue_job_inline(job_id: str, *, deps: InlineWorkerDeps) -> None:
    with deps.state.job_lock:
        if job_id not in deps.state.job_queue:
            deps.state.job_queue.append(job_id)
    deps.state.job_event.set()


def scan_pending_jobs_inline(*, deps: InlineWorkerDeps) -> int:
    """Fail jobs abandoned in processing, then queue every pending job."""
    lost = deps.recover_stale()
    if lost:
        _log.warning("marked %d abandoned assessment jobs failed", lost)
    count = 0
    for job_id in deps.list_pending():
        enqueue_job_inline(job_id, deps=deps)
        count += 1
    return count


def _next_job(deps: InlineWorkerDeps) -> str:
    with deps.state.job_lock:
        job_id = deps.state.job_queue.popleft() if deps.state.job_queue else ""
        if not deps.state.job_queue:
            deps.state.job_event.clear()
    return job_id


def job_worker_loop(*, deps: InlineWorkerDeps) -> None:
    while not deps.state.stop_event.is_set():
        deps.state.job_event.wait(timeout=0.1)
        if deps.state.stop_event.is_set():
            break
        job_id = _next_job(deps)
        if not job_id:
            deps.sleep(0.1)
            continue
        try:
            deps.process_job(job_id)
        except Exception:
            # process_job records failures on the job itself; this only guards the loop.
            _log.error("inline worker crashed on job %s", job_id, exc_info=True, extra={"job_id": job_id})


def drain_inline_jobs(*, deps: InlineWorkerDeps) -> int:
    """Process queued jobs on the calling thread until the queue is empty."""
    count = 0
    while True:
        job_id = _next_job(deps)
        if not job_id:
            return count
        deps.process_job(job_id)
        count += 1


def start_inline_worker(*, deps: InlineWorkerDeps) -> None:
    if deps.state.threads:
        return
    deps.state.stop_event.clear()
    recovered = scan_pending_jobs_inline(deps=deps)
    if recovered:
        _log.info("re-queued %d pending assessment jobs", recovered)
    for index in range(max(1, int(deps.pool_size))):
        thread = deps.thread_factory(
            target=lambda: job_worker_loop(deps=deps),
            daemon=True,
            name=f"assessment-worker-{index}",
        )
        thread.start()
        deps.state.threads.append(thread)


def stop_inline_worker(*, deps: InlineWorkerDeps, timeout_sec: float = 1.5) -> None:
    deps.state.stop_event.set()
    deps.state.job_event.set()
    for thread in list(deps.state.threads):
        try:
            thread.join(max(0.0, float(timeout_sec or 0.0)))
        except RuntimeError:
            _log.debug("worker thread %s was never started", getattr(thread, "name", "?"))
    deps.state.threads.clear()


def worker_running(state: Optional[InlineWorkerState]) -> bool:
    return bool(state and state.threads and not state.stop_event.is_set())
