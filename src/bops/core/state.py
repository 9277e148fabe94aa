from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from bops.core.errors import StateTransitionInvalid
from bops.core.models import Candidate, CandidateStatus, Finding, FindingStatus


class SubjectKind(str, Enum):
    CANDIDATE = "candidate"
    FINDING = "finding"


# Forward-only edges.  Terminal states map to an empty set.
CANDIDATE_TRANSITIONS: dict[CandidateStatus, set[CandidateStatus]] = {
    CandidateStatus.OPEN: {CandidateStatus.IN_PROGRESS, CandidateStatus.FAILED},
    CandidateStatus.IN_PROGRESS: {CandidateStatus.COMPLETED, CandidateStatus.FAILED},
    CandidateStatus.COMPLETED: set(),
    CandidateStatus.FAILED: set(),
}

# HUMAN_REVIEW is reachable from every non-terminal stage and is never
# left by automation.
FINDING_TRANSITIONS: dict[FindingStatus, set[FindingStatus]] = {
    FindingStatus.DETECTED: {FindingStatus.VERIFIED, FindingStatus.HUMAN_REVIEW},
    FindingStatus.VERIFIED: {FindingStatus.FIX_GENERATED, FindingStatus.HUMAN_REVIEW},
    FindingStatus.FIX_GENERATED: {FindingStatus.FIX_CONFIRMED, FindingStatus.HUMAN_REVIEW},
    FindingStatus.FIX_CONFIRMED: set(),
    FindingStatus.HUMAN_REVIEW: set(),
}


@dataclass(frozen=True)
class TransitionEvent:
    subject_kind: SubjectKind
    subject_id: str
    from_status: str
    to_status: str
    at_utc: str  # ISO string


def can_transition(from_status: Enum, to_status: Enum) -> bool:
    if isinstance(from_status, CandidateStatus) and isinstance(to_status, CandidateStatus):
        return to_status in CANDIDATE_TRANSITIONS.get(from_status, set())
    if isinstance(from_status, FindingStatus) and isinstance(to_status, FindingStatus):
        return to_status in FINDING_TRANSITIONS.get(from_status, set())
    return False


def is_terminal(status: Enum) -> bool:
    if isinstance(status, CandidateStatus):
        return not CANDIDATE_TRANSITIONS[status]
    return not FINDING_TRANSITIONS[status]


def transition(
    subject_kind: SubjectKind,
    subject_id: str,
    from_status: CandidateStatus | FindingStatus,
    to_status: CandidateStatus | FindingStatus,
) -> TransitionEvent:
    if not can_transition(from_status, to_status):
        raise StateTransitionInvalid(from_status.value, to_status.value)

    return TransitionEvent(
        subject_kind=subject_kind,
        subject_id=subject_id,
        from_status=from_status.value,
        to_status=to_status.value,
        at_utc=_now(),
    )


# ── Candidate transitions ───────────────────────────────────
def mark_in_progress(candidate: Candidate) -> Candidate:
    _check(candidate.status, CandidateStatus.IN_PROGRESS)
    return replace(candidate, status=CandidateStatus.IN_PROGRESS, started_utc=_now())


def mark_completed(candidate: Candidate, pull_request_id: str) -> Candidate:
    _check(candidate.status, CandidateStatus.COMPLETED)
    return replace(
        candidate,
        status=CandidateStatus.COMPLETED,
        pull_request_id=pull_request_id,
        completed_utc=_now(),
    )


def mark_failed(candidate: Candidate, reason: str) -> Candidate:
    _check(candidate.status, CandidateStatus.FAILED)
    return replace(candidate, status=CandidateStatus.FAILED, failure_reason=reason, failed_utc=_now())


# ── Finding transitions ─────────────────────────────────────
def advance(finding: Finding, to_status: FindingStatus, **changes: Any) -> Finding:
    """Move *finding* along one edge of :data:`FINDING_TRANSITIONS`."""
    _check(finding.status, to_status)
    return replace(finding, status=to_status, updated_utc=_now(), **changes)


def revise(finding: Finding, **changes: Any) -> Finding:
    """Update fields without touching the status."""
    if "status" in changes:
        raise ValueError("revise() cannot change status; use advance()")
    return replace(finding, updated_utc=_now(), **changes)


def _check(from_status: CandidateStatus | FindingStatus, to_status: CandidateStatus | FindingStatus) -> None:
    if not can_transition(from_status, to_status):
        raise StateTransitionInvalid(from_status.value, to_status.value)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
