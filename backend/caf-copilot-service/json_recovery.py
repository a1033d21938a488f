"""
CAF Copilot Service - JSON recovery for model output

Models are told to answer with bare JSON, but routinely wrap it in code fences,
add a sentence before or after, or leave a trailing comma. `recover_json`
undoes the common cases and reports a `MalformedModelOutput` for the rest.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

from models import MalformedModelOutput

_FENCE_RE = re.compile(r"```[ \t]*(?:json|javascript|js)?", flags=re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_CURLY_DOUBLE_QUOTES = ("“", "”", "„", "‟")
_CURLY_SINGLE_QUOTES = ("‘", "’", "‚", "‛")

_NOT_PARSED = object()


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are not valid JSON numbers.
    raise ValueError(f"Non-finite number in model output: {name}")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        _reject_constant(text)
    return value


def _safe_json_loads(candidate: str) -> Any:
    try:
        return json.loads(candidate, parse_float=_finite_float, parse_constant=_reject_constant)
    except (TypeError, ValueError):
        return _NOT_PARSED


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def slice_outer_object(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return text
    return text[start : end + 1]


def normalize_jsonish(text: str) -> str:
    fixed = _TRAILING_COMMA_RE.sub(r"\1", text)
    for quote in _CURLY_DOUBLE_QUOTES:
        fixed = fixed.replace(quote, '"')
    for quote in _CURLY_SINGLE_QUOTES:
        fixed = fixed.replace(quote, "'")
    # Only rewrite single quotes when the model used them as the sole string
    # delimiter; otherwise apostrophes inside values would be corrupted.
    if '"' not in fixed and "'" in fixed:
        fixed = fixed.replace("'", '"')
    return fixed


def recover_json(text: Optional[str]) -> Any:
    """
    Parse the single JSON value a model was asked to produce.

    Returns the parsed value, or a `MalformedModelOutput` carrying the
    original and the cleaned text. Never raises.
    """
    raw = text or ""
    parsed = _safe_json_loads(raw)
    if parsed is not _NOT_PARSED:
        return parsed

    unfenced = strip_code_fences(raw)
    cleaned = slice_outer_object(unfenced)
    for candidate in (unfenced, cleaned):
        parsed = _safe_json_loads(candidate)
        if parsed is not _NOT_PARSED:
            return parsed

    normalized = normalize_jsonish(cleaned)
    for candidate in (normalize_jsonish(unfenced), normalized):
        parsed = _safe_json_loads(candidate)
        if parsed is not _NOT_PARSED:
            return parsed

    return MalformedModelOutput(
        message="Model output did not contain recoverable JSON.",
        raw_text=raw,
        cleaned_text=normalized,
    )


def recover_json_object(text: Optional[str]) -> Any:
    """
    Same as `recover_json` but only accepts a JSON object.
    """
    recovered = recover_json(text)
    if isinstance(recovered, MalformedModelOutput) or isinstance(recovered, dict):
        return recovered
    raw = text or ""
    return MalformedModelOutput(
        message=f"Model output is JSON but not an object (got {type(recovered).__name__}).",
        raw_text=raw,
        cleaned_text=slice_outer_object(strip_code_fences(raw)),
    )
