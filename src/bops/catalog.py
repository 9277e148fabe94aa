"""YAML loaders for the vulnerability pattern catalog and candidate feeds.

Both inputs are operator-supplied files, loaded with the same guards:

* Size limit: rejects oversized files.
* ``yaml.safe_load`` only, no arbitrary Python objects.
* UTF-8 required.
* Each entry validated through a strict Pydantic model; typed exceptions
  (:class:`CatalogNotFound`, :class:`CatalogInvalid`,
  :class:`CatalogTooLarge`).
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from bops.core.errors import CatalogInvalid, CatalogNotFound, CatalogTooLarge
from bops.core.guard import validate_cve_id, validate_external_id, validate_url
from bops.core.models import Candidate, Money, Platform, VulnerabilityPattern

logger = structlog.get_logger()

_DEFAULT_MAX_SIZE_BYTES = 2048 * 1024


# ── Pydantic v2 strict models ──────────────────────────────
class PatternEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    cve_id: str
    language: str
    summary: str
    code_example: str | None = None
    vulnerable_pattern: str | None = None
    fixed_pattern: str | None = None

    @field_validator("cve_id")
    @classmethod
    def _cve(cls, v: str) -> str:
        return validate_cve_id(v)

    @field_validator("language", "summary")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    def to_pattern(self) -> VulnerabilityPattern:
        return VulnerabilityPattern(**self.model_dump())


class FeedEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    external_issue_id: str
    platform: Platform = Platform.OTHER
    repository_url: str
    amount: Decimal | None = None
    currency: str = "USD"
    title: str | None = None
    description: str | None = None

    @field_validator("external_issue_id", mode="before")
    @classmethod
    def _external_id(cls, v: Any) -> str:
        return validate_external_id(str(v))

    @field_validator("repository_url")
    @classmethod
    def _url(cls, v: str) -> str:
        return validate_url(v)

    def to_candidate(self) -> Candidate:
        return Candidate(
            external_issue_id=self.external_issue_id,
            platform=self.platform,
            repository_url=self.repository_url,
            amount=Money.parse(self.amount, self.currency),
            title=self.title,
            description=self.description,
        )


# ── Loaders ─────────────────────────────────────────────────
def load_pattern_catalog(
    path: Path,
    *,
    max_size_bytes: int = _DEFAULT_MAX_SIZE_BYTES,
) -> list[VulnerabilityPattern]:
    """Load ``{"patterns": [...]}`` (or a bare list) into vulnerability patterns.

    Raises
    ------
    CatalogNotFound
        File does not exist.
    CatalogTooLarge
        File exceeds *max_size_bytes*.
    CatalogInvalid
        YAML parse error or schema validation failure.
    """
    items = _load_items(path, "patterns", max_size_bytes=max_size_bytes)
    # "description" is accepted as a synonym for "summary".
    for item in items:
        if "description" in item and "summary" not in item:
            item["summary"] = item.pop("description")
    return [e.to_pattern() for e in _validate(items, PatternEntry, path)]


def load_candidate_feed(
    path: Path,
    *,
    max_size_bytes: int = _DEFAULT_MAX_SIZE_BYTES,
) -> list[Candidate]:
    """Load ``{"candidates": [...]}`` (or a bare list) into open candidates."""
    items = _load_items(path, "candidates", max_size_bytes=max_size_bytes)
    for item in items:
        if "id" in item and "external_issue_id" not in item:
            item["external_issue_id"] = item.pop("id")
        if "repository" in item and "repository_url" not in item:
            item["repository_url"] = item.pop("repository")
    return [e.to_candidate() for e in _validate(items, FeedEntry, path)]


class FeedFileProducer:
    """Candidate producer backed by a YAML feed file (re-read on every fetch)."""

    def __init__(self, path: Path, *, max_size_bytes: int = _DEFAULT_MAX_SIZE_BYTES) -> None:
        self.path = path
        self.max_size_bytes = max_size_bytes

    @property
    def name(self) -> str:
        return f"feed:{self.path.name}"

    def fetch(self) -> list[Candidate]:
        candidates = load_candidate_feed(self.path, max_size_bytes=self.max_size_bytes)
        logger.info("feed_loaded", feed=self.path.name, candidates=len(candidates))
        return candidates


# ── Internal helpers ────────────────────────────────────────
def _load_items(path: Path, key: str, *, max_size_bytes: int) -> list[dict[str, Any]]:
    if not path.exists():
        raise CatalogNotFound(f"file not found: {path}")

    size = path.stat().st_size
    if size > max_size_bytes:
        raise CatalogTooLarge(f"{path.name} is {size:,} bytes (limit {max_size_bytes:,})")

    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise CatalogInvalid(f"{path.name} is not valid UTF-8: {exc}") from exc

    try:
        raw: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CatalogInvalid(f"YAML parse error in {path.name}: {exc}") from exc

    if raw is None:
        return []

    if isinstance(raw, dict) and key in raw:
        items = raw[key]
    elif isinstance(raw, list):
        items = raw
    else:
        raise CatalogInvalid(f"{path.name}: expected list or {{'{key}': list}}")

    if not isinstance(items, list):
        raise CatalogInvalid(f"{path.name}: '{key}' must contain a list")

    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise CatalogInvalid(f"{path.name} item #{i} must be a mapping")
    return [dict(item) for item in items]


def _validate(items: list[dict[str, Any]], model: type[BaseModel], path: Path) -> list[Any]:
    out = []
    for i, item in enumerate(items):
        try:
            out.append(model.model_validate(item))
        except ValidationError as exc:
            raise CatalogInvalid(f"{path.name} item #{i}: {exc}") from exc
    return out
