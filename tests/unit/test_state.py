"""Tests for bops.core.state — transition tables and transition functions."""

from __future__ import annotations

import pytest

from bops.core.errors import StateTransitionInvalid
from bops.core.models import Candidate, CandidateStatus, Finding, FindingOrigin, FindingStatus, Platform
from bops.core.state import (
    SubjectKind,
    advance,
    can_transition,
    is_terminal,
    mark_completed,
    mark_failed,
    mark_in_progress,
    revise,
    transition,
)

F = FindingStatus
C = CandidateStatus


def _candidate(**kw) -> Candidate:
    return Candidate(external_issue_id="1", platform=Platform.GITHUB, repository_url="https://x.io/r", **kw)


def _finding(status: FindingStatus = F.DETECTED) -> Finding:
    return Finding(origin=FindingOrigin.ISSUE, repository_url="https://x.io/r", subject_id="1", status=status)


# ── Tables ──────────────────────────────────────────────────
class TestFindingTable:
    @pytest.mark.parametrize(
        ("src", "dst"),
        [
            (F.DETECTED, F.VERIFIED),
            (F.DETECTED, F.HUMAN_REVIEW),
            (F.VERIFIED, F.FIX_GENERATED),
            (F.VERIFIED, F.HUMAN_REVIEW),
            (F.FIX_GENERATED, F.FIX_CONFIRMED),
            (F.FIX_GENERATED, F.HUMAN_REVIEW),
        ],
    )
    def test_allowed(self, src, dst) -> None:
        assert can_transition(src, dst)

    @pytest.mark.parametrize(
        ("src", "dst"),
        [
            (F.VERIFIED, F.DETECTED),
            (F.FIX_GENERATED, F.VERIFIED),
            (F.FIX_CONFIRMED, F.FIX_GENERATED),
            (F.HUMAN_REVIEW, F.DETECTED),
            (F.HUMAN_REVIEW, F.VERIFIED),
            (F.DETECTED, F.FIX_GENERATED),
            (F.DETECTED, F.FIX_CONFIRMED),
        ],
    )
    def test_forbidden(self, src, dst) -> None:
        assert not can_transition(src, dst)

    def test_terminal_states(self) -> None:
        assert is_terminal(F.FIX_CONFIRMED)
        assert is_terminal(F.HUMAN_REVIEW)
        assert not is_terminal(F.FIX_GENERATED)


class TestCandidateTable:
    @pytest.mark.parametrize(
        ("src", "dst", "ok"),
        [
            (C.OPEN, C.IN_PROGRESS, True),
            (C.OPEN, C.FAILED, True),
            (C.IN_PROGRESS, C.COMPLETED, True),
            (C.IN_PROGRESS, C.FAILED, True),
            (C.OPEN, C.COMPLETED, False),
            (C.COMPLETED, C.OPEN, False),
            (C.FAILED, C.IN_PROGRESS, False),
        ],
    )
    def test_edges(self, src, dst, ok) -> None:
        assert can_transition(src, dst) is ok

    def test_mixed_enums_never_transition(self) -> None:
        assert not can_transition(C.OPEN, F.VERIFIED)


# ── transition() ────────────────────────────────────────────
class TestTransition:
    def test_returns_event(self) -> None:
        ev = transition(SubjectKind.FINDING, "f-1", F.DETECTED, F.VERIFIED)
        assert ev.subject_kind is SubjectKind.FINDING
        assert (ev.from_status, ev.to_status) == ("detected", "verified")
        assert ev.at_utc

    def test_invalid_raises(self) -> None:
        with pytest.raises(StateTransitionInvalid):
            transition(SubjectKind.CANDIDATE, "c-1", C.COMPLETED, C.OPEN)


# ── Candidate functions ─────────────────────────────────────
class TestCandidateFunctions:
    def test_lifecycle(self) -> None:
        c = mark_in_progress(_candidate())
        assert c.status is C.IN_PROGRESS and c.started_utc
        done = mark_completed(c, "pr-9")
        assert done.status is C.COMPLETED
        assert done.pull_request_id == "pr-9"
        assert done.completed_utc

    def test_mark_failed_records_reason(self) -> None:
        c = mark_failed(_candidate(), "repo archived")
        assert c.failure_reason == "repo archived"
        assert c.failed_utc

    def test_cannot_complete_open(self) -> None:
        with pytest.raises(StateTransitionInvalid):
            mark_completed(_candidate(), "pr-1")


# ── Finding functions ───────────────────────────────────────
class TestFindingFunctions:
    def test_advance_applies_changes(self) -> None:
        f = advance(_finding(), F.VERIFIED, root_cause_confidence=0.9)
        assert f.status is F.VERIFIED
        assert f.root_cause_confidence == 0.9

    def test_advance_rejects_regression(self) -> None:
        with pytest.raises(StateTransitionInvalid):
            advance(_finding(F.FIX_GENERATED), F.VERIFIED)

    def test_revise_keeps_status(self) -> None:
        f = revise(_finding(F.FIX_GENERATED), fix_confidence=0.7)
        assert f.status is F.FIX_GENERATED
        assert f.fix_confidence == 0.7

    def test_revise_refuses_status(self) -> None:
        with pytest.raises(ValueError):
            revise(_finding(), status=F.VERIFIED)
