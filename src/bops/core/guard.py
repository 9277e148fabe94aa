"""Input guard — validation and redaction at the trust boundary.

Candidate records arrive from third-party platforms and Oracle output is
free text, so every identifier is whitelisted before it touches SQLite and
every free-text note is length-capped and scrubbed of credentials before it
reaches the audit log or the logs.
"""

from __future__ import annotations

import re

# ── Secret patterns ─────────────────────────────────────────
_SECRET_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("BEARER", re.compile(r"\bBearer\s+[A-Za-z0-9._~+/=-]{8,}", re.IGNORECASE)),
    ("GITHUB", re.compile(r"\b(?:ghp|gho|ghu|ghs|ghr|github_pat)_[A-Za-z0-9_]{20,}\b")),
    ("APIKEY", re.compile(r"\bsk-[A-Za-z0-9_-]{16,}\b")),
    ("AWS", re.compile(r"\bAKIA[0-9A-Z]{16}\b")),
]

# External ids: issue numbers, slugs, commit SHAs.
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_\-.:#/ ]{1,256}$")

_SAFE_URL_RE = re.compile(r"^https?://[^\s]{1,2048}$")

_CVE_RE = re.compile(r"^CVE-\d{4}-\d{4,}$")

_MAX_NOTES = 16_384


def redact_secrets(text: str) -> str:
    """Replace detected credentials with ``[REDACTED-<TYPE>]``."""
    result = text
    for label, pattern in _SECRET_PATTERNS:
        result = pattern.sub(f"[REDACTED-{label}]", result)
    return result


def contains_secret(text: str) -> bool:
    return any(pattern.search(text) for _, pattern in _SECRET_PATTERNS)


def validate_external_id(value: str, *, field_name: str = "external_issue_id") -> str:
    """Validate an upstream identifier (issue id, commit SHA).

    Raises
    ------
    ValueError
        If the id is empty, too long, or contains disallowed characters.
    """
    value = str(value).strip()
    if not value:
        raise ValueError(f"{field_name} must not be empty")
    if not _SAFE_ID_RE.match(value):
        raise ValueError(f"{field_name} contains invalid characters or is too long (max 256): {value!r}")
    return value


def validate_url(url: str) -> str:
    """Validate a repository URL (only http/https allowed)."""
    url = (url or "").strip()
    if not _SAFE_URL_RE.match(url):
        raise ValueError(f"URL must be http/https and under 2048 chars: {url!r}")
    return url.rstrip("/")


def validate_cve_id(cve_id: str) -> str:
    cve_id = cve_id.strip().upper()
    if not _CVE_RE.match(cve_id):
        raise ValueError(f"not a CVE identifier: {cve_id!r}")
    return cve_id


def is_cve_id(value: str) -> bool:
    return bool(_CVE_RE.match(value.strip().upper()))


def sanitise_notes(notes: str, *, limit: int = _MAX_NOTES) -> str:
    """Sanitise free-text notes: redact credentials, keep the newest *limit* chars."""
    notes = redact_secrets(notes)
    if len(notes) > limit:
        notes = "…" + notes[-(limit - 1):]
    return notes


def clip(text: str | None, limit: int) -> str:
    """Bounded excerpt for prompt assembly."""
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n… [truncated {len(text) - limit} chars]"
