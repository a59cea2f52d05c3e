"""Assessment profiles: one per assessment type.

A profile ties together the result schema, the prompt builder, the request
contract (required ``domainInput`` fields) and the per-type cost controls
(rate limit, model, token cap, temperature).

Resolution order, later wins:

1. built-in defaults below;
2. the YAML file at ``ASSESS_PROFILES_PATH`` (mapping of type -> overrides);
3. ``ASSESS_<TYPE>_MAX_REQUESTS`` / ``_WINDOW_MS`` / ``_MODEL`` /
   ``_MAX_TOKENS`` / ``_TEMPERATURE`` environment variables.

Example YAML::

    rd_assessment:
      max_requests: 10
      model: gpt-4o
    report_review:
      temperature: 0.2
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from . import settings
from .prompt_builder import BUILDERS, PromptBuilder
from .result_schema import ResultSchema, get_schema

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssessmentProfile:
    assessment_type: str
    schema_name: str
    # Each entry names one required domainInput field; "a|b" accepts either.
    required_fields: Tuple[str, ...]
    subject_fields: Tuple[str, ...] = ()
    max_requests: int = 5
    window_ms: int = 60_000
    model: str = ""
    max_tokens: int = 1500
    temperature: float = 0.3
    json_mode: bool = True

    @property
    def schema(self) -> ResultSchema:
        return get_schema(self.schema_name)

    @property
    def prompt_builder(self) -> PromptBuilder:
        return BUILDERS[self.assessment_type] if self.assessment_type in BUILDERS else BUILDERS[self.schema_name]

    def missing_fields(self, domain_input: Mapping[str, Any]) -> List[str]:
        missing: List[str] = []
        for entry in self.required_fields:
            options = [name for name in entry.split("|") if name]
            if not any(_present(domain_input.get(name)) for name in options):
                missing.append(" or ".join(options))
        return missing

    def subject(self, domain_input: Mapping[str, Any]) -> str:
        for name in self.subject_fields:
            value = domain_input.get(name)
            if _present(value):
                return str(value).strip()
        return ""


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


BUILTIN_PROFILES: Dict[str, AssessmentProfile] = {
    "general": AssessmentProfile(
        assessment_type="general",
        schema_name="general",
        required_fields=("content",),
        subject_fields=("title",),
        max_requests=10,
        max_tokens=1500,
        temperature=0.3,
    ),
    "rd_assessment": AssessmentProfile(
        assessment_type="rd_assessment",
        schema_name="rd_assessment",
        required_fields=("query", "companyName", "companyDescription"),
        subject_fields=("companyName",),
        max_requests=3,
        max_tokens=1500,
        temperature=0.7,
    ),
    "report_review": AssessmentProfile(
        assessment_type="report_review",
        schema_name="report_review",
        required_fields=("reportContent", "reportTitle|fileName"),
        subject_fields=("reportTitle", "fileName"),
        max_requests=5,
        max_tokens=1800,
        temperature=0.3,
    ),
    "transcript_analysis": AssessmentProfile(
        assessment_type="transcript_analysis",
        schema_name="transcript_analysis",
        required_fields=("transcript", "clientName"),
        subject_fields=("clientName",),
        max_requests=5,
        max_tokens=2000,
        temperature=0.3,
    ),
}

_INT_KEYS = ("max_requests", "window_ms", "max_tokens")
_FLOAT_KEYS = ("temperature",)
_STR_KEYS = ("model", "schema_name")
_BOOL_KEYS = ("json_mode",)
_LIST_KEYS = ("required_fields", "subject_fields")


def _coerce_overrides(assessment_type: str, raw: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        try:
            if key in _INT_KEYS:
                out[key] = int(value)
            elif key in _FLOAT_KEYS:
                out[key] = float(value)
            elif key in _STR_KEYS:
                out[key] = str(value or "").strip()
            elif key in _BOOL_KEYS:
                out[key] = value if isinstance(value, bool) else settings.truthy(str(value))
            elif key in _LIST_KEYS:
                items = [value] if isinstance(value, str) else list(value or [])
                out[key] = tuple(str(item).strip() for item in items if str(item).strip())
            else:
                _log.warning("ignoring unknown profile key %s.%s", assessment_type, key)
        except (TypeError, ValueError):
            _log.warning("ignoring invalid profile value %s.%s=%r", assessment_type, key, value)
    return out


def load_profile_file(path: Path) -> Dict[str, Dict[str, Any]]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        _log.warning("assessment profile file not found: %s", path)
        return {}
    except Exception:
        _log.warning("failed to parse assessment profile YAML at %s", path, exc_info=True)
        return {}
    if not isinstance(raw, dict):
        return {}
    out: Dict[str, Dict[str, Any]] = {}
    for name, overrides in raw.items():
        if isinstance(overrides, dict):
            out[str(name).strip()] = _coerce_overrides(str(name), overrides)
    return out


def _env_overrides(assessment_type: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    max_requests = settings.optional_env_int(settings.type_override_key(assessment_type, "MAX_REQUESTS"))
    if max_requests is not None:
        out["max_requests"] = max_requests
    window_ms = settings.optional_env_int(settings.type_override_key(assessment_type, "WINDOW_MS"))
    if window_ms is not None:
        out["window_ms"] = window_ms
    max_tokens = settings.optional_env_int(settings.type_override_key(assessment_type, "MAX_TOKENS"))
    if max_tokens is not None:
        out["max_tokens"] = max_tokens
    temperature = settings.optional_env_float(settings.type_override_key(assessment_type, "TEMPERATURE"))
    if temperature is not None:
        out["temperature"] = temperature
    model = settings.env_str(settings.type_override_key(assessment_type, "MODEL"), "").strip()
    if model:
        out["model"] = model
    return out


def _checked(profile: AssessmentProfile) -> AssessmentProfile:
    get_schema(profile.schema_name)
    if profile.assessment_type not in BUILDERS and profile.schema_name not in BUILDERS:
        raise ValueError(f"no prompt builder for assessment type {profile.assessment_type}")
    if profile.max_requests <= 0 or profile.window_ms <= 0:
        raise ValueError(f"rate limit for {profile.assessment_type} must be positive")
    if profile.max_tokens <= 0:
        raise ValueError(f"max_tokens for {profile.assessment_type} must be positive")
    return replace(profile, temperature=min(2.0, max(0.0, profile.temperature)))


def load_profiles(path: Optional[str] = None) -> Dict[str, AssessmentProfile]:
    """Return every known profile with file and env overrides applied."""
    source = path if path is not None else settings.profiles_path()
    file_overrides = load_profile_file(Path(source)) if source else {}

    profiles: Dict[str, AssessmentProfile] = {}
    names = list(BUILTIN_PROFILES) + [name for name in file_overrides if name not in BUILTIN_PROFILES]
    for name in names:
        overrides = dict(file_overrides.get(name) or {})
        base = BUILTIN_PROFILES.get(name)
        if base is None:
            # New types reuse an existing schema and its prompt builder.
            schema_name = overrides.pop("schema_name", "") or "general"
            base = replace(BUILTIN_PROFILES["general"], assessment_type=name, schema_name=schema_name)
            if schema_name in BUILTIN_PROFILES:
                base = replace(BUILTIN_PROFILES[schema_name], assessment_type=name)
        overrides.update(_env_overrides(name))
        try:
            profiles[name] = _checked(replace(base, **overrides))
        except (KeyError, ValueError):
            _log.error("invalid assessment profile %s; keeping defaults", name, exc_info=True)
            if name in BUILTIN_PROFILES:
                profiles[name] = BUILTIN_PROFILES[name]
    return profiles
