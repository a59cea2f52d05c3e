from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, List, Mapping, Optional

from .result_schema import (
    BOOL,
    OBJECT,
    SCORE,
    TEXT,
    TEXT_LIST,
    FieldSpec,
    ResultSchema,
    ValidatedResult,
    fill_value,
    subject_from,
)

_log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[\w-]*\s*\n?(.*?)```", re.S)
_NUMBER_RE = re.compile(r"^[-+]?\d+(?:\.\d+)?")

_TRUE_WORDS = {"true", "yes", "y", "1"}
_FALSE_WORDS = {"false", "no", "n", "0"}

SCORE_MIN = 0
SCORE_MAX = 100


def _decode_object(content: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(content)
        if isinstance(data, dict):
            return data
    except Exception:
        _log.debug("initial JSON parse failed, trying brace slice for: %.200s", content)
    start = content.find("{")
    end = content.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(content[start : end + 1])
        if isinstance(data, dict):
            return data
    except Exception:
        _log.debug("brace slice JSON parse failed, trying each object start for: %.200s", content)
    # Prose or an example snippet may surround the object; decode from each "{" in turn.
    decoder = json.JSONDecoder()
    index = start
    while 0 <= index < end:
        try:
            data, _end = decoder.raw_decode(content, index)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return data
        index = content.find("{", index + 1)
    _log.debug("no decodable JSON object in model output, len=%d", len(content))
    return None


def parse_json_from_text(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Best-effort extraction of one JSON object from model output.

    A fenced block is tried first; when it holds no object the whole text is
    searched, so an example snippet in backticks cannot hide the real answer.
    """
    if not text:
        return None
    content = str(text).strip()
    fenced = _FENCE_RE.search(content)
    if fenced:
        data = _decode_object(fenced.group(1).strip())
        if data is not None:
            return data
    return _decode_object(content)


def coerce_score(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        match = _NUMBER_RE.match(value.strip())
        if not match:
            return None
        raw = match.group(0)
        number = float(raw) if "." in raw else int(raw)
    else:
        return None
    if isinstance(number, float) and not math.isfinite(number):
        return None
    return min(SCORE_MAX, max(SCORE_MIN, number))


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return None


def coerce_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _item_text(item: Any) -> str:
    if item is None:
        return ""
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, (dict, list)):
        return json.dumps(item, ensure_ascii=False)
    return str(item)


def coerce_text_list(value: Any) -> Optional[List[str]]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        return None
    return [text for text in (_item_text(item) for item in value) if text]


def _coerce_field(spec: FieldSpec, value: Any, subject: str) -> Any:
    if spec.kind == OBJECT:
        source = value if isinstance(value, dict) else {}
        return {child.name: _coerce_field(child, source.get(child.name), subject) for child in spec.children}
    if spec.kind == SCORE:
        coerced: Any = coerce_score(value)
    elif spec.kind == BOOL:
        coerced = coerce_bool(value)
    elif spec.kind == TEXT:
        coerced = coerce_text(value)
    elif spec.kind == TEXT_LIST:
        coerced = coerce_text_list(value)
    else:
        coerced = None
    if coerced is None:
        return fill_value(spec, use_fallback=False, subject=subject)
    return coerced


def normalize(data: Mapping[str, Any], schema: ResultSchema, context: Optional[Mapping[str, Any]] = None) -> ValidatedResult:
    subject = subject_from(context)
    fields = {spec.name: _coerce_field(spec, data.get(spec.name), subject) for spec in schema.fields}
    return ValidatedResult(schema_name=schema.name, fields=fields, is_fallback=False)


def validate(
    raw_text: Optional[str],
    schema: ResultSchema,
    context: Optional[Mapping[str, Any]] = None,
) -> ValidatedResult:
    """Turn raw model text into a fully populated result for ``schema``.

    Never raises. ``raw_text=None`` (the model call failed) and text without a
    JSON object both produce the schema's fallback result.
    """
    if raw_text is None:
        return schema.fallback(context)
    try:
        data = parse_json_from_text(raw_text)
        if data is None:
            _log.warning("model output held no JSON object; using %s fallback", schema.name)
            return schema.fallback(context)
        return normalize(data, schema, context)
    except Exception:
        _log.error("result validation failed; using %s fallback", schema.name, exc_info=True)
        return schema.fallback(context)
