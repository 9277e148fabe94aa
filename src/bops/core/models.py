"""bountyops domain models — enums and immutable value objects.

Candidates and findings are frozen dataclasses.  Nothing mutates them in
place: :mod:`bops.core.state` returns a new value for every transition, which
keeps the "status never regresses" rule checkable at one choke point.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class Platform(str, Enum):
    ALGORA = "algora"
    POLAR = "polar"
    GITHUB = "github"
    GITPAY = "gitpay"
    OTHER = "other"


class CandidateStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FindingStatus(str, Enum):
    DETECTED = "detected"
    VERIFIED = "verified"
    FIX_GENERATED = "fix_generated"
    FIX_CONFIRMED = "fix_confirmed"
    HUMAN_REVIEW = "human_review"


class FindingOrigin(str, Enum):
    ISSUE = "issue"
    COMMIT = "commit"


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str = "USD"

    @classmethod
    def parse(cls, amount: Any, currency: str | None = None) -> "Money | None":
        """Build from a loose value (``"200.00"``, ``200``, ``None``)."""
        if amount is None or amount == "":
            return None
        try:
            value = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValueError(f"amount is not a number: {amount!r}") from exc
        if not value.is_finite():
            raise ValueError(f"amount is not finite: {amount!r}")
        return cls(amount=value, currency=(currency or "USD").upper())


@dataclass(frozen=True)
class Candidate:
    """A paid bug-fix opportunity seen on an external platform."""

    external_issue_id: str
    platform: Platform
    repository_url: str
    amount: Money | None = None
    title: str | None = None
    description: str | None = None
    status: CandidateStatus = CandidateStatus.OPEN
    id: str = field(default_factory=new_id)
    created_utc: str = field(default_factory=utc_now)
    started_utc: str | None = None
    completed_utc: str | None = None
    failed_utc: str | None = None
    pull_request_id: str | None = None
    failure_reason: str | None = None
    triage_reason: str | None = None

    @property
    def is_claimed(self) -> bool:
        return self.status in (CandidateStatus.IN_PROGRESS, CandidateStatus.COMPLETED)

    def meets_minimum(self, minimum: Decimal) -> bool:
        if self.amount is None:
            return False
        return self.amount.amount >= minimum

    def priority_score(self) -> float:
        return float(self.amount.amount) if self.amount is not None else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_issue_id": self.external_issue_id,
            "platform": self.platform.value,
            "repository_url": self.repository_url,
            "amount": str(self.amount.amount) if self.amount else None,
            "currency": self.amount.currency if self.amount else None,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "created_utc": self.created_utc,
            "started_utc": self.started_utc,
            "completed_utc": self.completed_utc,
            "failed_utc": self.failed_utc,
            "pull_request_id": self.pull_request_id,
            "failure_reason": self.failure_reason,
            "triage_reason": self.triage_reason,
        }

    def to_json(self) -> str:
        """Canonical serialisation: sorted keys, no whitespace."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Candidate":
        return cls(
            id=data["id"],
            external_issue_id=data["external_issue_id"],
            platform=Platform(data["platform"]),
            repository_url=data["repository_url"],
            amount=Money.parse(data.get("amount"), data.get("currency")),
            title=data.get("title"),
            description=data.get("description"),
            status=CandidateStatus(data.get("status", CandidateStatus.OPEN.value)),
            created_utc=data.get("created_utc") or utc_now(),
            started_utc=data.get("started_utc"),
            completed_utc=data.get("completed_utc"),
            failed_utc=data.get("failed_utc"),
            pull_request_id=data.get("pull_request_id"),
            failure_reason=data.get("failure_reason"),
            triage_reason=data.get("triage_reason"),
        )

    @classmethod
    def from_json(cls, blob: str) -> "Candidate":
        return cls.from_dict(json.loads(blob))


@dataclass(frozen=True)
class VulnerabilityPattern:
    """Per-language catalog entry describing a known vulnerability's code shapes."""

    cve_id: str
    language: str
    summary: str
    code_example: str | None = None
    vulnerable_pattern: str | None = None
    fixed_pattern: str | None = None


@dataclass(frozen=True)
class Finding:
    """A suspected bug or vulnerability being driven through verification."""

    origin: FindingOrigin
    repository_url: str
    subject_id: str
    status: FindingStatus = FindingStatus.DETECTED
    id: str = field(default_factory=new_id)
    cve_id: str | None = None
    candidate_id: str | None = None
    language: str | None = None
    title: str | None = None
    description: str | None = None
    commit_diff: str | None = None
    root_cause_analysis: str | None = None
    root_cause_confidence: float | None = None
    presence_confidence: float | None = None
    fix_confidence: float | None = None
    affected_files: tuple[str, ...] = ()
    affected_code: Mapping[str, str] = field(default_factory=dict)
    recommended_fix: str | None = None
    verification_notes: str = ""
    requires_human_review: bool = False
    human_reviewed: bool = False
    pull_request_id: str | None = None
    created_utc: str = field(default_factory=utc_now)
    updated_utc: str = field(default_factory=utc_now)

    @property
    def needs_human_review(self) -> bool:
        return self.requires_human_review and not self.human_reviewed

    def with_note(self, stage: str, text: str) -> "Finding":
        """Return a copy with ``[stage] text`` appended to the notes log."""
        entry = f"[{stage}] {text.strip()}"
        notes = f"{self.verification_notes}\n\n{entry}" if self.verification_notes else entry
        return replace(self, verification_notes=notes)
