"""Staged verification of findings.

A finding moves through three Oracle-backed stages::

    detected ──root cause──▶ verified ──fix──▶ fix_generated ──review──▶ fix_confirmed
        │                       │                    │
        └───────────────────────┴────────────────────┴──▶ human_review

Each stage is a pure function of (finding, subject, context) that returns a
new :class:`~bops.core.models.Finding`; persistence is the caller's business
(see the ``on_transition`` hook of :meth:`StagedVerifier.run`).

Failure policy
--------------
An Oracle error, timeout or unparseable reply never escapes a stage.  It sets
that stage's confidence to 0.0, appends a note and flags the finding for
human review:

* root cause / presence: the finding goes to ``human_review``;
* fix generation: the finding goes to ``human_review``;
* fix review: the finding stays ``fix_generated`` with the flag set.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

import structlog

from bops.analysis import prompts
from bops.analysis.context import CodebaseContextProvider
from bops.analysis.extract import extract_object, read_bool, read_float, read_str, read_str_list, read_str_map
from bops.analysis.oracle import Oracle
from bops.core.errors import StateTransitionInvalid
from bops.core.guard import clip
from bops.core.models import Finding, FindingOrigin, FindingStatus, VulnerabilityPattern
from bops.core.settings import Settings
from bops.core.state import advance, revise

logger = structlog.get_logger()


@dataclass(frozen=True)
class IssueSubject:
    issue_id: str
    title: str | None
    description: str | None


@dataclass(frozen=True)
class CommitSubject:
    commit_id: str
    diff: str | None
    pattern: VulnerabilityPattern


Subject = Union[IssueSubject, CommitSubject]

TransitionCallback = Callable[[Finding, Finding], None]


def subject_for(finding: Finding, pattern: VulnerabilityPattern | None = None) -> Subject:
    if finding.origin is FindingOrigin.ISSUE:
        return IssueSubject(finding.subject_id, finding.title, finding.description)
    if pattern is None:
        raise ValueError(f"commit finding {finding.id} needs its vulnerability pattern")
    return CommitSubject(finding.subject_id, finding.commit_diff, pattern)


@dataclass(frozen=True)
class Gates:
    root_cause: float = 0.7
    fix_confirm: float = 0.8
    fix_review: float = 0.6

    @classmethod
    def from_settings(cls, settings: Settings) -> "Gates":
        return cls(
            root_cause=settings.root_cause_gate,
            fix_confirm=settings.fix_confirm_gate,
            fix_review=settings.fix_review_gate,
        )


class StagedVerifier:
    """Drives one finding through root-cause, fix generation and fix review."""

    def __init__(
        self,
        oracle: Oracle,
        context_provider: CodebaseContextProvider,
        gates: Gates | None = None,
    ) -> None:
        self.oracle = oracle
        self.context_provider = context_provider
        self.gates = gates or Gates()

    # ── Transition 1 ────────────────────────────────────────
    def verify_root_cause(self, finding: Finding, subject: Subject, context: str) -> Finding:
        """Confirm the root cause (issue) or the vulnerability's presence (commit)."""
        _require(finding, FindingStatus.DETECTED)
        stage = "root_cause" if isinstance(subject, IssueSubject) else "presence"

        if isinstance(subject, IssueSubject):
            prompt = prompts.root_cause_prompt(
                repository_url=finding.repository_url,
                language=finding.language,
                issue_id=subject.issue_id,
                title=subject.title,
                description=subject.description,
                context=context,
            )
        else:
            prompt = prompts.presence_prompt(
                repository_url=finding.repository_url,
                language=finding.language,
                commit_id=subject.commit_id,
                diff=subject.diff,
                pattern=subject.pattern,
                context=context,
            )

        data, error = self._ask(prompt, finding, stage)
        confidence_field = "root_cause_confidence" if stage == "root_cause" else "presence_confidence"
        if data is None:
            flagged = finding.with_note(stage, f"Oracle failure, confidence 0.0: {error}")
            return advance(
                flagged,
                FindingStatus.HUMAN_REVIEW,
                requires_human_review=True,
                **{confidence_field: 0.0},
            )

        if isinstance(subject, IssueSubject):
            confidence = read_float(data, "confidence")
            narrative = read_str(data, "rootCause")
            files = read_str_list(data, "affectedFiles")
            code = read_str_map(data, "affectedCode")
            note = f"confidence={confidence:.2f}"
        else:
            present = read_bool(data, "present")
            confidence = read_float(data, "confidence") if present else 0.0
            narrative = read_str(data, "notes")
            files = read_str_list(data, "affectedFiles")
            vulnerable = read_str(data, "vulnerableCode")
            anchor = files[0] if files else (finding.affected_files[0] if finding.affected_files else "diff")
            code = {anchor: vulnerable} if vulnerable else {}
            note = f"present={present} confidence={confidence:.2f}"

        if narrative:
            note += f"\n{clip(narrative, 2000)}"
        updated = finding.with_note(stage, note)
        changes = {
            confidence_field: confidence,
            "root_cause_analysis": narrative or finding.root_cause_analysis,
            "affected_files": tuple(files) or finding.affected_files,
            "affected_code": code or finding.affected_code,
        }

        if confidence < self.gates.root_cause:
            logger.info("finding_below_gate", finding_id=finding.id, stage=stage, confidence=confidence)
            return advance(updated, FindingStatus.HUMAN_REVIEW, requires_human_review=True, **changes)
        return advance(updated, FindingStatus.VERIFIED, **changes)

    # ── Transition 2 ────────────────────────────────────────
    def generate_fix(self, finding: Finding, subject: Subject, context: str) -> Finding:
        _require(finding, FindingStatus.VERIFIED)
        prompt = prompts.fix_prompt(
            subject=_subject_text(subject),
            analysis=finding.root_cause_analysis,
            affected_code=finding.affected_code,
            context=context,
        )
        data, error = self._ask(prompt, finding, "fix")
        if data is None:
            flagged = finding.with_note("fix", f"Oracle failure: {error}")
            return advance(flagged, FindingStatus.HUMAN_REVIEW, requires_human_review=True)

        fix = read_str(data, "fixCode").strip()
        if not fix:
            flagged = finding.with_note("fix", "Oracle returned no fix code")
            return advance(flagged, FindingStatus.HUMAN_REVIEW, requires_human_review=True)

        note = f"fix generated ({len(fix)} chars)"
        notes = read_str(data, "notes")
        if notes:
            note += f"\n{clip(notes, 2000)}"
        return advance(finding.with_note("fix", note), FindingStatus.FIX_GENERATED, recommended_fix=fix)

    # ── Transition 3 ────────────────────────────────────────
    def verify_fix(self, finding: Finding, subject: Subject, context: str) -> Finding:
        _require(finding, FindingStatus.FIX_GENERATED)
        prompt = prompts.verify_fix_prompt(
            subject=_subject_text(subject),
            affected_code=finding.affected_code,
            fix=finding.recommended_fix or "",
        )
        data, error = self._ask(prompt, finding, "fix_review")
        if data is None:
            flagged = finding.with_note("fix_review", f"Oracle failure, confidence 0.0: {error}")
            return revise(flagged, fix_confidence=0.0, requires_human_review=True)

        confidence = read_float(data, "confidence")
        # "correct" is advisory; the confidence alone decides the route.
        note = f"correct={read_bool(data, 'correct', True)} confidence={confidence:.2f}"
        for key in ("notes", "suggestions"):
            text = read_str(data, key)
            if text:
                note += f"\n{key}: {clip(text, 2000)}"
        updated = finding.with_note("fix_review", note)

        if confidence >= self.gates.fix_confirm:
            return advance(updated, FindingStatus.FIX_CONFIRMED, fix_confidence=confidence, requires_human_review=False)
        if confidence >= self.gates.fix_review:
            return revise(updated, fix_confidence=confidence, requires_human_review=True)
        return advance(updated, FindingStatus.HUMAN_REVIEW, fix_confidence=confidence, requires_human_review=True)

    # ── Driver ──────────────────────────────────────────────
    def run(
        self,
        finding: Finding,
        pattern: VulnerabilityPattern | None = None,
        on_transition: TransitionCallback | None = None,
    ) -> Finding:
        """Run every stage the finding's status still allows and return the result.

        ``on_transition(previous, current)`` is called after each stage.
        """
        subject = subject_for(finding, pattern)
        language = finding.language or (pattern.language if pattern else None)
        context, problem = self._context(finding.repository_url, language)

        current = finding
        if problem:
            current = current.with_note("context", problem)

        stages = {
            FindingStatus.DETECTED: self.verify_root_cause,
            FindingStatus.VERIFIED: self.generate_fix,
            FindingStatus.FIX_GENERATED: self.verify_fix,
        }
        while current.status in stages:
            previous = current
            current = stages[current.status](current, subject, context)
            if on_transition is not None:
                on_transition(previous, current)
            if previous.status is FindingStatus.FIX_GENERATED:
                break

        logger.info(
            "finding_pipeline_finished",
            finding_id=finding.id,
            status=current.status.value,
            requires_human_review=current.requires_human_review,
        )
        return current

    # ── Internals ───────────────────────────────────────────
    def _ask(self, prompt: str, finding: Finding, stage: str) -> tuple[dict | None, str | None]:
        try:
            return extract_object(self.oracle.complete(prompt)), None
        except Exception as exc:  # any Oracle failure routes to human review
            logger.warning("oracle_stage_failed", finding_id=finding.id, stage=stage, error=str(exc))
            return None, f"{type(exc).__name__}: {exc}"

    def _context(self, repository_url: str, language: str | None) -> tuple[str, str | None]:
        if not language:
            return "", "no language known; proceeding without codebase context"
        try:
            return self.context_provider.get(repository_url, language), None
        except Exception as exc:
            logger.warning("context_unavailable", repository_url=repository_url, error=str(exc))
            return "", f"codebase context unavailable: {exc}"


def _require(finding: Finding, status: FindingStatus) -> None:
    if finding.status is not status:
        raise StateTransitionInvalid(finding.status.value, f"(stage for {status.value})")


def _subject_text(subject: Subject) -> str:
    if isinstance(subject, IssueSubject):
        return prompts.issue_subject_text(subject.issue_id, subject.title, subject.description)
    return prompts.commit_subject_text(subject.commit_id, subject.pattern, subject.diff)
