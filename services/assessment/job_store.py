"""Durable job records for asynchronous assessments.

Every state change goes through :meth:`transition`, an atomic compare-and-set
on the job's current state. A caller that loses the race gets ``None`` back and
must not touch the job; this makes each transition single-writer even when a
cancel request and a worker reach the same pending job together.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .job_state_machine import PENDING, PROCESSING, normalize_job_state, transition_job_state

_log = logging.getLogger(__name__)

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def is_valid_job_id(job_id: object) -> bool:
    return bool(_JOB_ID_RE.match(str(job_id or "")))


@dataclass(frozen=True)
class Job:
    job_id: str
    identity: str
    assessment_type: str
    domain_input: Dict[str, Any] = field(default_factory=dict)
    state: str = PENDING
    result: Optional[Dict[str, Any]] = None
    is_fallback: bool = False
    error_message: Optional[str] = None
    request_id: str = ""
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            job_id=str(data.get("job_id") or ""),
            identity=str(data.get("identity") or ""),
            assessment_type=str(data.get("assessment_type") or ""),
            domain_input=dict(data.get("domain_input") or {}),
            state=normalize_job_state(data.get("state")),
            result=data.get("result") if isinstance(data.get("result"), dict) else None,
            is_fallback=bool(data.get("is_fallback")),
            error_message=(str(data["error_message"]) if data.get("error_message") is not None else None),
            request_id=str(data.get("request_id") or ""),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(str(value or ""))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_stale_processing(job: Job, older_than_sec: float, now: Optional[datetime] = None) -> bool:
    """True for a ``processing`` job not touched for ``older_than_sec`` seconds.

    A processing record without a readable ``updated_at`` counts as stale;
    nothing else would ever move it to a terminal state.
    """
    if job.state != PROCESSING:
        return False
    updated = _parse_iso(job.updated_at)
    if updated is None:
        return True
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=max(0.0, float(older_than_sec)))
    return updated <= cutoff


def new_job(identity: str, assessment_type: str, domain_input: Dict[str, Any], *, request_id: str = "") -> Job:
    now = utc_now_iso()
    return Job(
        job_id=new_job_id(),
        identity=identity,
        assessment_type=assessment_type,
        domain_input=dict(domain_input),
        request_id=request_id,
        created_at=now,
        updated_at=now,
    )


def apply_transition(
    job: Job,
    target: str,
    *,
    result: Optional[Dict[str, Any]] = None,
    is_fallback: bool = False,
    error_message: Optional[str] = None,
) -> Job:
    """Return ``job`` moved to ``target``; raises InvalidTransition if not allowed."""
    state = transition_job_state(job.state, target)
    return replace(
        job,
        state=state,
        result=result if state == "completed" else None,
        is_fallback=bool(is_fallback) if state == "completed" else False,
        error_message=(str(error_message or "assessment failed") if state == "failed" else None),
        updated_at=utc_now_iso(),
    )


class JobStore(Protocol):
    def create(self, job: Job) -> Job: ...

    def get(self, job_id: str) -> Optional[Job]: ...

    def transition(
        self,
        job_id: str,
        expected: str,
        target: str,
        *,
        result: Optional[Dict[str, Any]] = None,
        is_fallback: bool = False,
        error_message: Optional[str] = None,
    ) -> Optional[Job]: ...

    def list_pending(self) -> List[str]: ...

    def list_stale_processing(self, older_than_sec: float, now: Optional[datetime] = None) -> List[str]: ...


# ---------------------------------------------------------------------------
# File store
# ---------------------------------------------------------------------------


def _atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Unique temp names so concurrent writers never share one *.tmp file.
    tmp = path.with_suffix(path.suffix + f".{uuid.uuid4().hex}.tmp")
    try:
        fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
        try:
            os.write(fd, json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        tmp.replace(path)
    finally:
        try:
            tmp.unlink(missing_ok=True)
        except Exception:
            _log.debug("failed to clean up temp file %s", tmp)


class FileJobStore:
    """One directory per job holding ``job.json`` and a ``flock`` lock file."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _job_dir(self, job_id: str) -> Path:
        return self.base_dir / job_id

    def _read(self, job_path: Path) -> Optional[Job]:
        try:
            data = json.loads(job_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            _log.warning("corrupt job.json at %s: %s", job_path, exc)
            return None
        return Job.from_dict(data) if isinstance(data, dict) else None

    def _locked(self, job_id: str):
        job_dir = self._job_dir(job_id)
        job_dir.mkdir(parents=True, exist_ok=True)
        return _FileLock(job_dir / ".job.lock")

    def create(self, job: Job) -> Job:
        if not is_valid_job_id(job.job_id):
            raise ValueError(f"invalid job id: {job.job_id!r}")
        job_path = self._job_dir(job.job_id) / "job.json"
        with self._locked(job.job_id):
            if job_path.exists():
                raise ValueError(f"job already exists: {job.job_id}")
            _atomic_write_json(job_path, job.to_dict())
        return job

    def get(self, job_id: str) -> Optional[Job]:
        if not is_valid_job_id(job_id):
            return None
        return self._read(self._job_dir(job_id) / "job.json")

    def transition(
        self,
        job_id: str,
        expected: str,
        target: str,
        *,
        result: Optional[Dict[str, Any]] = None,
        is_fallback: bool = False,
        error_message: Optional[str] = None,
    ) -> Optional[Job]:
        if not is_valid_job_id(job_id) or not (self._job_dir(job_id) / "job.json").exists():
            return None
        job_path = self._job_dir(job_id) / "job.json"
        with self._locked(job_id):
            current = self._read(job_path)
            if current is None or current.state != normalize_job_state(expected):
                return None
            updated = apply_transition(
                current, target, result=result, is_fallback=is_fallback, error_message=error_message
            )
            _atomic_write_json(job_path, updated.to_dict())
        return updated

    def list_pending(self) -> List[str]:
        pending: List[str] = []
        for job_path in sorted(self.base_dir.glob("*/job.json")):
            job = self._read(job_path)
            if job is not None and job.state == PENDING:
                pending.append(job.job_id)
        return pending

    def list_stale_processing(self, older_than_sec: float, now: Optional[datetime] = None) -> List[str]:
        stale: List[str] = []
        for job_path in sorted(self.base_dir.glob("*/job.json")):
            job = self._read(job_path)
            if job is not None and is_stale_processing(job, older_than_sec, now):
                stale.append(job.job_id)
        return stale


class _FileLock:
    def __init__(self, path: Path):
        self.path = path
        self._fd: Optional[int] = None

    def __enter__(self) -> "_FileLock":
        self._fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT)
        fcntl.flock(self._fd, fcntl.LOCK_EX)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

# Keeps the pending (KEYS[2]) and processing (KEYS[3]) id sets in step with a job state.
_INDEXED = """
local function reindex(state, job_id)
    if state == 'pending' then
        redis.call('SADD', KEYS[2], job_id)
    else
        redis.call('SREM', KEYS[2], job_id)
    end
    if state == 'processing' then
        redis.call('SADD', KEYS[3], job_id)
    else
        redis.call('SREM', KEYS[3], job_id)
    end
end
"""

_CREATE_SCRIPT = _INDEXED + """
local job_key = KEYS[1]
local ttl = tonumber(ARGV[4]) or 0

if redis.call('EXISTS', job_key) == 1 then
    return 0
end
redis.call('HSET', job_key, 'state', ARGV[2], 'data', ARGV[3])
if ttl > 0 then
    redis.call('EXPIRE', job_key, ttl)
end
reindex(ARGV[2], ARGV[1])
return 1
"""

_CAS_SCRIPT = _INDEXED + """
local job_key = KEYS[1]
local ttl = tonumber(ARGV[5]) or 0

local state = redis.call('HGET', job_key, 'state')
if not state then
    return -1
end
if state ~= ARGV[2] then
    return 0
end
redis.call('HSET', job_key, 'state', ARGV[3], 'data', ARGV[4])
if ttl > 0 then
    redis.call('EXPIRE', job_key, ttl)
end
reindex(ARGV[3], ARGV[1])
return 1
"""


class RedisJobStore:
    """Jobs as Redis hashes (``state`` + JSON ``data``) with Lua compare-and-set.

    Pending and processing ids are also kept in one set each. Job hashes
    expire after ``ttl_sec``; the sets do not, so ids whose hash is gone are
    removed whenever a set is listed.
    """

    def __init__(self, redis_client, *, prefix: str = "assess", ttl_sec: int = 7 * 24 * 3600):
        self.redis = redis_client
        self.prefix = str(prefix or "assess").strip() or "assess"
        self.ttl_sec = max(0, int(ttl_sec or 0))
        self._create_script = self.redis.register_script(_CREATE_SCRIPT)
        self._cas_script = self.redis.register_script(_CAS_SCRIPT)

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _pending_key(self) -> str:
        return f"{self.prefix}:jobs:pending"

    def _processing_key(self) -> str:
        return f"{self.prefix}:jobs:processing"

    def _keys(self, job_id: str) -> List[str]:
        return [self._job_key(job_id), self._pending_key(), self._processing_key()]

    def create(self, job: Job) -> Job:
        if not is_valid_job_id(job.job_id):
            raise ValueError(f"invalid job id: {job.job_id!r}")
        created = self._create_script(
            keys=self._keys(job.job_id),
            args=[job.job_id, job.state, json.dumps(job.to_dict(), ensure_ascii=False), self.ttl_sec],
        )
        if not int(created):
            raise ValueError(f"job already exists: {job.job_id}")
        return job

    def get(self, job_id: str) -> Optional[Job]:
        if not is_valid_job_id(job_id):
            return None
        state, raw = self.redis.hmget(self._job_key(job_id), ["state", "data"])
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            _log.warning("corrupt job record for %s", job_id)
            return None
        if not isinstance(data, dict):
            return None
        job = Job.from_dict(data)
        return replace(job, state=normalize_job_state(state)) if state else job

    def transition(
        self,
        job_id: str,
        expected: str,
        target: str,
        *,
        result: Optional[Dict[str, Any]] = None,
        is_fallback: bool = False,
        error_message: Optional[str] = None,
    ) -> Optional[Job]:
        current = self.get(job_id)
        if current is None or current.state != normalize_job_state(expected):
            return None
        updated = apply_transition(current, target, result=result, is_fallback=is_fallback, error_message=error_message)
        applied = self._cas_script(
            keys=self._keys(job_id),
            args=[
                job_id,
                current.state,
                updated.state,
                json.dumps(updated.to_dict(), ensure_ascii=False),
                self.ttl_sec,
            ],
        )
        return updated if int(applied) == 1 else None

    def _indexed_jobs(self, set_key: str) -> List[Job]:
        jobs: List[Job] = []
        expired: List[str] = []
        for job_id in sorted(str(item) for item in (self.redis.smembers(set_key) or [])):
            job = self.get(job_id)
            if job is None:
                expired.append(job_id)
            else:
                jobs.append(job)
        if expired:
            self.redis.srem(set_key, *expired)
            _log.info("pruned %d expired job ids from %s", len(expired), set_key)
        return jobs

    def list_pending(self) -> List[str]:
        return [job.job_id for job in self._indexed_jobs(self._pending_key()) if job.state == PENDING]

    def list_stale_processing(self, older_than_sec: float, now: Optional[datetime] = None) -> List[str]:
        return [
            job.job_id
            for job in self._indexed_jobs(self._processing_key())
            if is_stale_processing(job, older_than_sec, now)
        ]
