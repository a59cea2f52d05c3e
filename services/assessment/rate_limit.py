"""Per-identity fixed-window admission control.

A window opens on an identity's first admitted request and counts every
admitted request until ``window_size_ms`` has elapsed since it opened; the
next request after that starts a fresh window.

Two window stores implement the same read-modify-write:

* ``MemoryWindowStore`` – process-local, guarded by a lock. Only correct when a
  single process serves all requests (development, tests).
* ``RedisWindowStore`` – one hash per identity updated inside a Lua script, so
  every API instance shares the same counters and admission is serializable.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateWindow:
    identity: str
    window_start_ms: int
    count: int


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after_ms: int = 0
    count: int = 0


def decide(
    window: Optional[RateWindow],
    identity: str,
    now_ms: int,
    *,
    window_size_ms: int,
    max_requests: int,
) -> Tuple[RateWindow, Admission]:
    """Pure admission step: returns the window to store and the decision."""
    if window is None or now_ms - window.window_start_ms >= window_size_ms:
        return RateWindow(identity, now_ms, 1), Admission(True, 0, 1)
    if window.count < max_requests:
        updated = RateWindow(identity, window.window_start_ms, window.count + 1)
        return updated, Admission(True, 0, updated.count)
    retry_after = window_size_ms - (now_ms - window.window_start_ms)
    return window, Admission(False, max(1, min(window_size_ms, retry_after)), window.count)


class WindowStore(Protocol):
    def admit(self, key: str, now_ms: int, *, window_size_ms: int, max_requests: int) -> Admission: ...


class MemoryWindowStore:
    def __init__(self, *, max_buckets: int = 4096):
        self._lock = threading.Lock()
        self._windows: Dict[str, RateWindow] = {}
        self._window_size: Dict[str, int] = {}
        self._max_buckets = max(1, int(max_buckets))

    def __len__(self) -> int:
        return len(self._windows)

    def get(self, key: str) -> Optional[RateWindow]:
        with self._lock:
            return self._windows.get(key)

    def _sweep_stale_locked(self, now_ms: int) -> None:
        stale = [
            key
            for key, window in self._windows.items()
            if now_ms - window.window_start_ms >= self._window_size.get(key, 0)
        ]
        for key in stale:
            self._windows.pop(key, None)
            self._window_size.pop(key, None)

    def _enforce_cap_locked(self) -> None:
        overflow = len(self._windows) - self._max_buckets
        if overflow <= 0:
            return
        oldest = sorted(self._windows.items(), key=lambda item: item[1].window_start_ms)[:overflow]
        for key, _window in oldest:
            self._windows.pop(key, None)
            self._window_size.pop(key, None)

    def admit(self, key: str, now_ms: int, *, window_size_ms: int, max_requests: int) -> Admission:
        with self._lock:
            if len(self._windows) >= self._max_buckets:
                self._sweep_stale_locked(now_ms)
            window, admission = decide(
                self._windows.get(key),
                key,
                now_ms,
                window_size_ms=window_size_ms,
                max_requests=max_requests,
            )
            self._windows[key] = window
            self._window_size[key] = window_size_ms
            self._enforce_cap_locked()
            return admission


_ADMIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])

local fields = redis.call('HMGET', key, 'window_start', 'count')
local start = tonumber(fields[1])
local count = tonumber(fields[2])

if (not start) or (not count) or (now - start >= window) then
    redis.call('HSET', key, 'window_start', ARGV[1], 'count', 1)
    redis.call('PEXPIRE', key, window)
    return {1, 0, 1}
end

if count < max_requests then
    count = redis.call('HINCRBY', key, 'count', 1)
    return {1, 0, count}
end

return {0, window - (now - start), count}
"""


class RedisWindowStore:
    def __init__(self, redis_client, *, prefix: str = "ratelimit"):
        self.redis = redis_client
        self.prefix = str(prefix or "ratelimit").strip() or "ratelimit"
        self._admit_script = self.redis.register_script(_ADMIT_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def admit(self, key: str, now_ms: int, *, window_size_ms: int, max_requests: int) -> Admission:
        result = self._admit_script(
            keys=[self._key(key)],
            args=[int(now_ms), int(window_size_ms), int(max_requests)],
        )
        allowed, retry_after, count = (int(result[0]), int(result[1]), int(result[2]))
        if allowed:
            return Admission(True, 0, count)
        # Clock skew between instances can push the raw value outside the window.
        return Admission(False, max(1, min(int(window_size_ms), retry_after)), count)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Admission control for one pipeline (one assessment type).

    ``namespace`` keeps counters of different pipelines apart, so each
    assessment type enforces its own ``max_requests`` per identity.
    """

    def __init__(
        self,
        store: WindowStore,
        *,
        window_size_ms: int = 60_000,
        max_requests: int = 5,
        namespace: str = "default",
        clock: Callable[[], int] = _wall_clock_ms,
    ):
        if int(window_size_ms) <= 0:
            raise ValueError("window_size_ms must be positive")
        if int(max_requests) <= 0:
            raise ValueError("max_requests must be positive")
        self.store = store
        self.window_size_ms = int(window_size_ms)
        self.max_requests = int(max_requests)
        self.namespace = namespace
        self._clock = clock

    def admit(self, identity: str, now_ms: Optional[int] = None) -> Admission:
        ident = str(identity or "").strip() or "anonymous"
        now = int(self._clock() if now_ms is None else now_ms)
        try:
            admission = self.store.admit(
                f"{self.namespace}:{ident}",
                now,
                window_size_ms=self.window_size_ms,
                max_requests=self.max_requests,
            )
        except Exception:
            # Store outages admit the request rather than turning every call into an error.
            _log.error("rate limit store unavailable; admitting %s", ident, exc_info=True)
            return Admission(True, 0, 0)
        if not admission.allowed:
            _log.info(
                "rate limit reached namespace=%s identity=%s count=%d/%d retry_after_ms=%d",
                self.namespace,
                ident,
                admission.count,
                self.max_requests,
                admission.retry_after_ms,
            )
        return admission
