from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

from llm_gateway import CompletionOptions, ModelClientError, UpstreamError

from . import settings
from .errors import RateLimited
from .profiles import AssessmentProfile
from .rate_limit import Admission, RateLimiter
from .result_validator import validate
from .result_schema import ValidatedResult

_log = logging.getLogger(__name__)

_BASE_BACKOFF_SEC = 1.0
_MAX_BACKOFF_SEC = 8.0


class CompletionClient(Protocol):
    def complete(self, system_prompt: str, user_prompt: str, options: Optional[CompletionOptions] = None) -> str: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    base_backoff_sec: float = _BASE_BACKOFF_SEC
    max_backoff_sec: float = _MAX_BACKOFF_SEC
    max_latency_sec: float = 90.0

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.pipeline_max_attempts(),
            max_latency_sec=settings.pipeline_max_latency_sec(),
        )

    def delay_for(self, attempt: int, exc: BaseException, rand: Callable[[], float]) -> float:
        delay = min(self.max_backoff_sec, self.base_backoff_sec * (2 ** (attempt - 1)))
        delay = delay * (0.5 + rand() / 2)
        hint = getattr(exc, "retry_after_sec", None) if isinstance(exc, UpstreamError) else None
        if hint:
            delay = max(delay, float(hint))
        return delay


@dataclass
class AssessmentPipeline:
    """Admission, prompt, model call and validation for one assessment type.

    ``run`` raises only :class:`RateLimited`. Every failure after admission
    (no model configured, upstream errors, malformed output) ends in the
    schema's fallback result.
    """

    profile: AssessmentProfile
    limiter: RateLimiter
    model_client: Optional[CompletionClient]
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], None] = time.sleep
    monotonic: Callable[[], float] = time.monotonic
    rand: Callable[[], float] = random.random

    @property
    def assessment_type(self) -> str:
        return self.profile.assessment_type

    def admit(self, identity: str, now_ms: Optional[int] = None) -> Admission:
        admission = self.limiter.admit(identity, now_ms)
        if not admission.allowed:
            raise RateLimited(admission.retry_after_ms)
        return admission

    def run(self, identity: str, domain_input: Mapping[str, Any]) -> ValidatedResult:
        self.admit(identity)
        return self.assess(domain_input)

    def completion_options(self) -> CompletionOptions:
        return CompletionOptions(
            model=self.profile.model,
            max_tokens=self.profile.max_tokens,
            temperature=self.profile.temperature,
            json_mode=self.profile.json_mode,
        )

    def _call_timeout_sec(self) -> float:
        return max(0.0, float(getattr(self.model_client, "read_timeout_sec", 0.0) or 0.0))

    def _call_model(self, system_prompt: str, user_prompt: str, started: float) -> Optional[str]:
        if self.model_client is None:
            _log.warning("no model client configured", extra={"assessment_type": self.assessment_type})
            return None
        options = self.completion_options()
        attempts = max(1, int(self.retry.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                return self.model_client.complete(system_prompt, user_prompt, options)
            except ModelClientError as exc:
                _log.warning(
                    "model call failed attempt=%d/%d retryable=%s: %s",
                    attempt,
                    attempts,
                    exc.retryable,
                    exc,
                    extra={"assessment_type": self.assessment_type, "attempt": attempt},
                )
                if not exc.retryable or attempt >= attempts:
                    return None
                delay = self.retry.delay_for(attempt, exc, self.rand)
                elapsed = self.monotonic() - started
                # The next attempt may itself run for a full read timeout.
                if elapsed + delay + self._call_timeout_sec() > self.retry.max_latency_sec:
                    _log.warning(
                        "skipping retry: latency budget %.0fs would be exceeded",
                        self.retry.max_latency_sec,
                        extra={"assessment_type": self.assessment_type, "attempt": attempt},
                    )
                    return None
                self.sleep(delay)
            except Exception:
                _log.error(
                    "unexpected model client failure",
                    exc_info=True,
                    extra={"assessment_type": self.assessment_type, "attempt": attempt},
                )
                return None
        return None

    def assess(self, domain_input: Mapping[str, Any]) -> ValidatedResult:
        """Build the prompt, call the model and validate; never raises."""
        started = self.monotonic()
        schema = self.profile.schema
        context = {"subject": self.profile.subject(domain_input)}
        raw_text: Optional[str] = None
        try:
            prompt = self.profile.prompt_builder(domain_input)
        except Exception:
            _log.error("prompt build failed", exc_info=True, extra={"assessment_type": self.assessment_type})
        else:
            raw_text = self._call_model(prompt.system, prompt.user, started)
        result = validate(raw_text, schema, context)
        duration_ms = int((self.monotonic() - started) * 1000)
        if result.is_fallback:
            _log.warning(
                "assessment degraded to fallback result",
                extra={"assessment_type": self.assessment_type, "duration_ms": duration_ms},
            )
        else:
            _log.info(
                "assessment completed",
                extra={"assessment_type": self.assessment_type, "duration_ms": duration_ms},
            )
        return result
