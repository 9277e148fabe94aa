"""Tests for bops.analysis.pipeline — staged verification and its failure policy."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FIX, FIX_REVIEW, PRESENCE, ROOT_CAUSE, ScriptedOracle

from bops.analysis.pipeline import CommitSubject, Gates, IssueSubject, StagedVerifier, subject_for
from bops.analysis.recorder import FindingRecorder
from bops.core import audit
from bops.core.errors import StateTransitionInvalid, UpstreamTransient
from bops.core.models import Finding, FindingOrigin, FindingStatus, VulnerabilityPattern
from bops.core.repository import require_finding
from bops.core.settings import Settings

_ROOT = {
    "rootCause": "index off by one when the list is empty",
    "affectedFiles": ["widgets/core.py"],
    "affectedCode": {"widgets/core.py": "return xs[len(xs)]"},
    "confidence": 0.9,
}
_FIX = {"fixCode": "return xs[-1] if xs else None", "notes": "guard empty list"}

_PATTERN = VulnerabilityPattern(
    cve_id="CVE-2021-44228",
    language="java",
    summary="Log4Shell",
    vulnerable_pattern="logger.info(userInput)",
)


class FakeContext:
    def __init__(self, text: str = '{"modules": []}', error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def get(self, repository_url: str, language: str) -> str:
        self.calls.append((repository_url, language))
        if self.error is not None:
            raise self.error
        return self.text


def _issue(**kw) -> Finding:
    defaults = dict(
        origin=FindingOrigin.ISSUE,
        repository_url="https://github.com/acme/widgets",
        subject_id="42",
        language="python",
        title="Crash on empty list",
        description="IndexError when calling last([])",
    )
    defaults.update(kw)
    return Finding(**defaults)


def _commit() -> Finding:
    return Finding(
        origin=FindingOrigin.COMMIT,
        repository_url="https://github.com/acme/server",
        subject_id="abc123def456",
        cve_id=_PATTERN.cve_id,
        language="java",
        commit_diff="+ logger.info(request.getParameter(\"q\"));",
        affected_files=("src/Search.java",),
    )


def _verifier(routes: dict, context: FakeContext | None = None) -> tuple[StagedVerifier, ScriptedOracle]:
    oracle = ScriptedOracle(routes)
    return StagedVerifier(oracle, context or FakeContext()), oracle


# ── Full runs ───────────────────────────────────────────────
class TestIssueRun:
    def test_low_root_cause_confidence_stops_at_human_review(self) -> None:
        verifier, oracle = _verifier({ROOT_CAUSE: {**_ROOT, "confidence": 0.5}})
        result = verifier.run(_issue())
        assert result.status is FindingStatus.HUMAN_REVIEW
        assert result.requires_human_review
        assert result.root_cause_confidence == 0.5
        assert oracle.calls(FIX) == 0

    def test_high_confidence_reaches_fix_confirmed(self) -> None:
        verifier, oracle = _verifier(
            {ROOT_CAUSE: _ROOT, FIX: _FIX, FIX_REVIEW: {"correct": True, "confidence": 0.85}}
        )
        result = verifier.run(_issue())
        assert result.status is FindingStatus.FIX_CONFIRMED
        assert not result.requires_human_review
        assert result.fix_confidence == 0.85
        assert result.recommended_fix == _FIX["fixCode"]
        assert result.affected_files == ("widgets/core.py",)
        assert result.root_cause_analysis == _ROOT["rootCause"]
        assert [oracle.calls(p) for p in (ROOT_CAUSE, FIX, FIX_REVIEW)] == [1, 1, 1]

    def test_middling_review_keeps_fix_with_flag(self) -> None:
        verifier, _ = _verifier({ROOT_CAUSE: _ROOT, FIX: _FIX, FIX_REVIEW: {"correct": True, "confidence": 0.7}})
        result = verifier.run(_issue())
        assert result.status is FindingStatus.FIX_GENERATED
        assert result.requires_human_review
        assert result.fix_confidence == 0.7

    def test_poor_review_goes_to_human_review(self) -> None:
        verifier, _ = _verifier({ROOT_CAUSE: _ROOT, FIX: _FIX, FIX_REVIEW: {"correct": False, "confidence": 0.3}})
        result = verifier.run(_issue())
        assert result.status is FindingStatus.HUMAN_REVIEW
        assert result.fix_confidence == 0.3
        assert "correct=False" in result.verification_notes

    def test_root_cause_gate_is_inclusive(self) -> None:
        verifier, _ = _verifier(
            {ROOT_CAUSE: {**_ROOT, "confidence": 0.7}, FIX: _FIX, FIX_REVIEW: {"confidence": 0.8}}
        )
        assert verifier.run(_issue()).status is FindingStatus.FIX_CONFIRMED

    def test_custom_gates(self) -> None:
        oracle = ScriptedOracle({ROOT_CAUSE: {**_ROOT, "confidence": 0.9}})
        verifier = StagedVerifier(oracle, FakeContext(), Gates(root_cause=0.95, fix_confirm=0.99, fix_review=0.9))
        assert verifier.run(_issue()).status is FindingStatus.HUMAN_REVIEW

    def test_notes_only_grow(self) -> None:
        seen: list[str] = []
        verifier, _ = _verifier({ROOT_CAUSE: _ROOT, FIX: _FIX, FIX_REVIEW: {"confidence": 0.9, "notes": "LGTM"}})
        verifier.run(_issue(), on_transition=lambda prev, cur: seen.append(cur.verification_notes))
        assert len(seen) == 3
        for earlier, later in zip(seen, seen[1:]):
            assert later.startswith(earlier)
        assert "[root_cause]" in seen[0] and "[fix]" in seen[1] and "notes: LGTM" in seen[2]


# ── Failure policy ──────────────────────────────────────────
class TestFailures:
    def test_root_cause_oracle_error(self) -> None:
        verifier, _ = _verifier({ROOT_CAUSE: UpstreamTransient("oracle", "HTTP 503")})
        result = verifier.run(_issue())
        assert result.status is FindingStatus.HUMAN_REVIEW
        assert result.root_cause_confidence == 0.0
        assert result.requires_human_review
        assert "Oracle failure" in result.verification_notes

    def test_unparseable_reply(self) -> None:
        verifier, _ = _verifier({ROOT_CAUSE: "I think the bug is somewhere in the parser."})
        result = verifier.run(_issue())
        assert result.status is FindingStatus.HUMAN_REVIEW
        assert "ParseFailure" in result.verification_notes

    def test_fix_generation_error(self) -> None:
        verifier, oracle = _verifier({ROOT_CAUSE: _ROOT, FIX: RuntimeError("socket closed")})
        result = verifier.run(_issue())
        assert result.status is FindingStatus.HUMAN_REVIEW
        assert result.recommended_fix is None
        assert oracle.calls(FIX_REVIEW) == 0

    def test_empty_fix(self) -> None:
        verifier, _ = _verifier({ROOT_CAUSE: _ROOT, FIX: {"fixCode": "   "}})
        result = verifier.run(_issue())
        assert result.status is FindingStatus.HUMAN_REVIEW
        assert "no fix code" in result.verification_notes

    def test_fix_review_error_keeps_fix_generated(self) -> None:
        verifier, _ = _verifier({ROOT_CAUSE: _ROOT, FIX: _FIX, FIX_REVIEW: UpstreamTransient("oracle", "timeout")})
        result = verifier.run(_issue())
        assert result.status is FindingStatus.FIX_GENERATED
        assert result.fix_confidence == 0.0
        assert result.requires_human_review
        assert result.recommended_fix == _FIX["fixCode"]

    def test_missing_language_skips_context(self) -> None:
        context = FakeContext()
        verifier, _ = _verifier({ROOT_CAUSE: {**_ROOT, "confidence": 0.1}}, context)
        result = verifier.run(_issue(language=None))
        assert context.calls == []
        assert "[context]" in result.verification_notes
        assert result.status is FindingStatus.HUMAN_REVIEW

    def test_context_error_is_noted(self) -> None:
        context = FakeContext(error=OSError("index corrupt"))
        verifier, _ = _verifier({ROOT_CAUSE: {**_ROOT, "confidence": 0.1}}, context)
        result = verifier.run(_issue())
        assert "codebase context unavailable" in result.verification_notes

    def test_stage_requires_matching_status(self) -> None:
        verifier, _ = _verifier({})
        subject = IssueSubject("42", None, None)
        with pytest.raises(StateTransitionInvalid):
            verifier.generate_fix(_issue(), subject, "")


# ── Commit findings ─────────────────────────────────────────
class TestPresence:
    def test_not_present_means_zero_confidence(self) -> None:
        verifier, oracle = _verifier({PRESENCE: {"present": False, "confidence": 0.95}})
        result = verifier.run(_commit(), _PATTERN)
        assert result.status is FindingStatus.HUMAN_REVIEW
        assert result.presence_confidence == 0.0
        assert oracle.calls(FIX) == 0

    def test_present_goes_on_to_fix(self) -> None:
        verifier, oracle = _verifier(
            {
                PRESENCE: {"present": True, "confidence": 0.9, "vulnerableCode": "logger.info(q)"},
                FIX: _FIX,
                FIX_REVIEW: {"confidence": 0.9},
            }
        )
        result = verifier.run(_commit(), _PATTERN)
        assert result.status is FindingStatus.FIX_CONFIRMED
        assert result.presence_confidence == 0.9
        assert result.affected_code == {"src/Search.java": "logger.info(q)"}
        assert "CVE-2021-44228" in oracle.prompts[0]

    def test_commit_subject_needs_pattern(self) -> None:
        with pytest.raises(ValueError):
            subject_for(_commit())
        assert isinstance(subject_for(_commit(), _PATTERN), CommitSubject)


# ── Persistence hook ────────────────────────────────────────
class TestRecorder:
    def test_every_stage_persisted_and_audited(self, conn) -> None:
        verifier, _ = _verifier({ROOT_CAUSE: _ROOT, FIX: _FIX, FIX_REVIEW: {"confidence": 0.9}})
        result = verifier.run(_issue(), on_transition=FindingRecorder(conn))

        stored = require_finding(conn, result.id)
        assert stored.status is FindingStatus.FIX_CONFIRMED
        assert stored.verification_notes == result.verification_notes
        events = audit.export_audit(conn, subject_id=result.id)
        assert [(e["from_status"], e["to_status"]) for e in events] == [
            ("detected", "verified"),
            ("verified", "fix_generated"),
            ("fix_generated", "fix_confirmed"),
        ]
        assert "root_cause=0.90" in events[0]["notes"]
        assert audit.verify_chain(conn) == 3

    def test_field_only_revision_persisted_without_event(self, conn) -> None:
        verifier, _ = _verifier({ROOT_CAUSE: _ROOT, FIX: _FIX, FIX_REVIEW: {"confidence": 0.65}})
        result = verifier.run(_issue(), on_transition=FindingRecorder(conn))
        stored = require_finding(conn, result.id)
        assert stored.status is FindingStatus.FIX_GENERATED
        assert stored.fix_confidence == 0.65
        assert stored.requires_human_review
        assert len(audit.export_audit(conn, subject_id=result.id)) == 2


def test_gates_from_settings(tmp_path: Path) -> None:
    settings = Settings(repo_root=tmp_path, root_cause_gate=0.5, fix_confirm_gate=0.9, fix_review_gate=0.4)
    assert Gates.from_settings(settings) == Gates(root_cause=0.5, fix_confirm=0.9, fix_review=0.4)
