"""Tolerant extraction of JSON from Oracle free text.

Oracle replies are expected to carry one JSON value but routinely wrap it in
markdown fences or prose.  The extractors try, in order:

1. the whole (fence-stripped) text,
2. the first fenced code block,
3. the outermost ``{...}`` (or ``[...]``) span,

and raise :class:`~bops.core.errors.ParseFailure` when nothing parses.

The ``read_*`` helpers pull typed fields out of the result with explicit
defaults; a field of the wrong type reads as its default rather than
failing the whole reply.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from bops.core.errors import ParseFailure

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)

# Keys an Oracle tends to wrap a bare list in.
_LIST_KEYS = ("cves", "cve_ids", "cveIds", "ids", "matches", "results", "items")


def extract_object(text: str) -> dict[str, Any]:
    value = _extract(text, "{", "}")
    if not isinstance(value, dict):
        raise ParseFailure(f"expected a JSON object, got {type(value).__name__}")
    return value


def extract_array(text: str) -> list[Any]:
    """Extract a top-level JSON list (or a list under a well-known key)."""
    try:
        value = _extract(text, "[", "]")
    except ParseFailure:
        value = _extract(text, "{", "}")
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in _LIST_KEYS:
            if isinstance(value.get(key), list):
                return value[key]
    raise ParseFailure(f"expected a JSON array, got {type(value).__name__}")


def _extract(text: str, open_ch: str, close_ch: str) -> Any:
    if not text or not text.strip():
        raise ParseFailure("empty response")

    stripped = text.strip()
    attempts: list[str] = [_strip_fences(stripped)]

    fenced = _FENCE_RE.search(stripped)
    if fenced:
        attempts.append(fenced.group(1))

    first = stripped.find(open_ch)
    last = stripped.rfind(close_ch)
    if first != -1 and last > first:
        attempts.append(stripped[first : last + 1])

    for blob in attempts:
        try:
            value = json.loads(blob)
        except json.JSONDecodeError:
            continue
        if isinstance(value, (dict, list)):
            return value
    raise ParseFailure(f"no JSON {open_ch}{close_ch} found in response ({len(text)} chars)")


def _strip_fences(text: str) -> str:
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.startswith("json"):
            text = text[4:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


# ── Typed readers ───────────────────────────────────────────
def read_bool(data: Mapping[str, Any], key: str, default: bool = False) -> bool:
    value = data.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return default


def read_float(
    data: Mapping[str, Any],
    key: str,
    default: float = 0.0,
    *,
    lo: float = 0.0,
    hi: float = 1.0,
) -> float:
    """Numeric field clamped to ``[lo, hi]`` (confidence range by default)."""
    value = data.get(key, default)
    if isinstance(value, bool):
        return default
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return default
    if not isinstance(value, (int, float)) or value != value:  # NaN
        return default
    return min(max(float(value), lo), hi)


def read_int(data: Mapping[str, Any], key: str, default: int = 0) -> int:
    value = data.get(key, default)
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return default


def read_str(data: Mapping[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    if isinstance(value, str):
        return value
    return default


def read_str_list(data: Mapping[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v.strip()]


def read_str_map(data: Mapping[str, Any], key: str) -> dict[str, str]:
    value = data.get(key)
    if not isinstance(value, dict):
        return {}
    return {str(k): v for k, v in value.items() if isinstance(v, str)}
