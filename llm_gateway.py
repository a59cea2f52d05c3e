from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import requests

_log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_ENDPOINT = "/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT_SEC = 45.0

_RETRYABLE_STATUS = {408, 409, 425, 429}


class ModelClientError(Exception):
    """Base class for failures of a single completion call."""

    retryable = False


class UpstreamError(ModelClientError):
    def __init__(self, status_code: int, detail: str = "", *, retry_after_sec: Optional[float] = None):
        super().__init__(f"upstream_error:{status_code}{(' ' + detail) if detail else ''}")
        self.status_code = int(status_code)
        self.detail = detail
        self.retry_after_sec = retry_after_sec

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code in _RETRYABLE_STATUS or self.status_code >= 500


class UpstreamTimeout(ModelClientError):
    retryable = True


class MalformedUpstreamResponse(ModelClientError):
    pass


@dataclass(frozen=True)
class CompletionOptions:
    model: str = DEFAULT_MODEL
    max_tokens: Optional[int] = 1500
    temperature: float = 0.3
    json_mode: bool = False


@dataclass
class Target:
    base_url: str
    endpoint: str
    headers: Dict[str, str]
    timeout_sec: Tuple[float, float]
    default_model: str = DEFAULT_MODEL
    extra: Dict[str, Any] = field(default_factory=dict)


def _clamp_timeout_seconds(value: Any, *, default: float, min_value: float = 1.0, max_value: float = 300.0) -> float:
    try:
        parsed = float(value)
    except Exception:
        parsed = float(default)
    if parsed <= 0:
        parsed = float(default)
    return min(max_value, max(min_value, parsed))


def _parse_timeout_candidate(value: Any) -> Optional[float]:
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    # An unbounded wait is never allowed for the model call.
    if text in {"0", "none", "inf", "infinite", "null"}:
        return None
    try:
        return float(text)
    except Exception:
        return None


def _build_timeout_pair(
    *,
    default_timeout_sec: Any,
    timeout_value: Any = None,
    connect_value: Any = None,
) -> Tuple[float, float]:
    default_read = _clamp_timeout_seconds(default_timeout_sec, default=DEFAULT_TIMEOUT_SEC)
    read_timeout = _clamp_timeout_seconds(_parse_timeout_candidate(timeout_value), default=default_read)
    connect_default = min(10.0, read_timeout)
    connect_candidate = _parse_timeout_candidate(connect_value)
    connect_timeout = _clamp_timeout_seconds(connect_candidate, default=connect_default, max_value=120.0)
    return (min(connect_timeout, read_timeout), read_timeout)


def _retry_after_seconds(resp: Any) -> Optional[float]:
    headers = getattr(resp, "headers", None) or {}
    raw = headers.get("retry-after") if hasattr(headers, "get") else None
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def _error_detail(resp: Any) -> str:
    try:
        data = resp.json()
    except Exception:
        return str(getattr(resp, "text", "") or "")[:200]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err.get("type") or "")[:200]
        if err:
            return str(err)[:200]
    return ""


def resolve_target(
    *,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    endpoint: Optional[str] = None,
    model: Optional[str] = None,
    timeout_sec: Any = None,
    connect_timeout_sec: Any = None,
) -> Target:
    key = api_key or os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
    if not key:
        raise ValueError("API key missing. Set LLM_API_KEY or OPENAI_API_KEY.")
    url = str(base_url or os.getenv("LLM_BASE_URL") or DEFAULT_BASE_URL).strip().rstrip("/")
    path = str(endpoint or os.getenv("LLM_ENDPOINT") or DEFAULT_ENDPOINT).strip()
    if not path.startswith("/"):
        path = "/" + path
    return Target(
        base_url=url,
        endpoint=path,
        headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
        timeout_sec=_build_timeout_pair(
            default_timeout_sec=DEFAULT_TIMEOUT_SEC,
            timeout_value=timeout_sec if timeout_sec is not None else os.getenv("LLM_TIMEOUT_SEC"),
            connect_value=(
                connect_timeout_sec if connect_timeout_sec is not None else os.getenv("LLM_CONNECT_TIMEOUT_SEC")
            ),
        ),
        default_model=str(model or os.getenv("LLM_MODEL") or DEFAULT_MODEL),
    )


class ModelClient:
    """Single-shot client for an OpenAI-compatible chat-completions endpoint.

    ``complete`` performs exactly one HTTP call and either returns the message
    text or raises a :class:`ModelClientError` subclass. Retrying is the
    caller's decision.
    """

    def __init__(self, target: Target, session: Optional[requests.Session] = None):
        self.target = target
        self._session = session or requests.Session()

    @classmethod
    def from_env(cls) -> "ModelClient":
        return cls(resolve_target())

    @property
    def read_timeout_sec(self) -> float:
        return float(self.target.timeout_sec[1])

    def _payload(self, system_prompt: str, user_prompt: str, options: CompletionOptions) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": options.model or self.target.default_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": options.temperature,
        }
        if options.max_tokens is not None:
            payload["max_tokens"] = int(options.max_tokens)
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[CompletionOptions] = None,
    ) -> str:
        opts = options or CompletionOptions(model=self.target.default_model)
        payload = self._payload(system_prompt, user_prompt, opts)
        started = time.monotonic()
        try:
            resp = self._session.post(
                f"{self.target.base_url}{self.target.endpoint}",
                headers=self.target.headers,
                json=payload,
                timeout=self.target.timeout_sec,
            )
        except requests.Timeout as exc:
            raise UpstreamTimeout(f"upstream_timeout after {time.monotonic() - started:.1f}s") from exc
        except requests.RequestException as exc:
            # Connection failures are treated like a transient 503.
            raise UpstreamError(503, f"connection_failed: {exc}") from exc

        status = int(getattr(resp, "status_code", 0) or 0)
        _log.info(
            "model call finished model=%s status=%s duration_ms=%d",
            payload["model"],
            status,
            int((time.monotonic() - started) * 1000),
        )
        if status < 200 or status >= 300:
            raise UpstreamError(status, _error_detail(resp), retry_after_sec=_retry_after_seconds(resp))

        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse("response body is not JSON") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise MalformedUpstreamResponse("response has no choices")
        message = choices[0].get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), str):
            raise MalformedUpstreamResponse("response has no message content")
        usage = data.get("usage") or {}
        if usage:
            _log.debug("model usage total_tokens=%s", usage.get("total_tokens"))
        return message["content"]


__all__ = [
    "CompletionOptions",
    "MalformedUpstreamResponse",
    "ModelClient",
    "ModelClientError",
    "Target",
    "UpstreamError",
    "UpstreamTimeout",
    "resolve_target",
]
