from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

_log = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parents[2]


def truthy(value: str) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default)


def env_int(name: str, default: int) -> int:
    try:
        return int(env_str(name, str(default)) or default)
    except Exception:
        _log.debug("numeric conversion failed", exc_info=True)
        return int(default)


def env_float(name: str, default: float) -> float:
    try:
        return float(env_str(name, str(default)) or default)
    except Exception:
        _log.debug("numeric conversion failed", exc_info=True)
        return float(default)


def env_bool(name: str, default: str = "") -> bool:
    return truthy(env_str(name, default))


def optional_env_int(name: str) -> Optional[int]:
    raw = env_str(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return None


def optional_env_float(name: str) -> Optional[float]:
    raw = env_str(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        _log.warning("ignoring non-numeric %s=%r", name, raw)
        return None


def app_env() -> str:
    env = env_str("APP_ENV", "").strip() or env_str("ENV", "development").strip() or "development"
    return env.lower()


def is_production() -> bool:
    return app_env() in {"prod", "production"}


def is_pytest() -> bool:
    return bool(os.getenv("PYTEST_CURRENT_TEST"))


def redis_url() -> str:
    return env_str("REDIS_URL", "redis://localhost:6379/0")


def rate_limit_backend() -> str:
    return env_str("RATE_LIMIT_BACKEND", "memory").strip().lower() or "memory"


def rate_limit_max_buckets() -> int:
    return max(1, env_int("RATE_LIMIT_MAX_BUCKETS", 4096))


def job_store_backend() -> str:
    return env_str("JOB_STORE_BACKEND", "file").strip().lower() or "file"


def job_store_dir() -> Path:
    raw = env_str("JOB_STORE_DIR", "").strip()
    return Path(raw) if raw else APP_ROOT / "data" / "assessment_jobs"


def job_queue_backend() -> str:
    return env_str("JOB_QUEUE_BACKEND", "inline").strip().lower() or "inline"


def allow_inline_fallback_in_prod() -> bool:
    return env_bool("ALLOW_INLINE_FALLBACK_IN_PROD", "0")


def rq_queue_name() -> str:
    return env_str("RQ_QUEUE_NAME", "assessments")


def inline_worker_pool_size() -> int:
    return max(1, env_int("INLINE_WORKER_POOL_SIZE", 2))


def pipeline_max_attempts() -> int:
    return min(5, max(1, env_int("PIPELINE_MAX_ATTEMPTS", 2)))


def pipeline_max_latency_sec() -> float:
    return max(1.0, env_float("PIPELINE_MAX_LATENCY_SEC", 90.0))


def profiles_path() -> str:
    return env_str("ASSESS_PROFILES_PATH", "").strip()


def default_assessment_type() -> str:
    return env_str("DEFAULT_ASSESSMENT_TYPE", "rd_assessment").strip() or "rd_assessment"


def cors_origins() -> list[str]:
    raw = env_str("CORS_ORIGINS", "*")
    origins = [item.strip() for item in raw.split(",") if item.strip()]
    return origins or ["*"]


def type_override_key(assessment_type: str, suffix: str) -> str:
    return f"ASSESS_{assessment_type.strip().upper()}_{suffix}"


def job_ttl_sec() -> int:
    return max(0, env_int("JOB_TTL_SEC", 7 * 24 * 3600))


def rq_scan_pending_on_start() -> bool:
    return env_bool("RQ_SCAN_PENDING_ON_START", "0")


def rq_job_timeout_sec() -> int:
    # Room for every retry inside the pipeline's latency budget.
    return int(pipeline_max_latency_sec()) + 60


def stale_job_after_sec() -> float:
    """Age after which a ``processing`` job is treated as abandoned by its worker."""
    floor = float(rq_job_timeout_sec() + 60)
    return max(floor, env_float("STALE_JOB_AFTER_SEC", floor))
