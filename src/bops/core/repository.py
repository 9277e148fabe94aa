"""Store access — candidates, findings, vulnerability patterns, repositories.

Thin wrapper around SQLite that enforces the state machine rules.
Every status change goes through ``transition_candidate()`` or
``update_finding()``, which:

1. Validate the edge via ``state.can_transition()``.
2. Write the row with ``WHERE status = <previous>`` so a concurrent writer
   that already moved the record forward makes this write fail instead of
   regressing it.
3. Return a ``TransitionEvent`` (which the caller passes to the audit log).

This module never touches the events table directly; that's ``audit.py``'s job.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any

from bops.core.errors import CandidateNotFound, FindingNotFound, StateTransitionInvalid
from bops.core.guard import redact_secrets, validate_cve_id, validate_external_id, validate_url
from bops.core.models import (
    Candidate,
    CandidateStatus,
    Finding,
    FindingOrigin,
    FindingStatus,
    Money,
    Platform,
    VulnerabilityPattern,
)
from bops.core.state import (
    SubjectKind,
    TransitionEvent,
    can_transition,
    mark_completed,
    mark_failed,
    mark_in_progress,
    transition,
)


# ── Candidates ──────────────────────────────────────────────
def insert_candidate(conn: sqlite3.Connection, candidate: Candidate) -> Candidate:
    """Insert a new candidate in ``open`` state.

    Raises
    ------
    sqlite3.IntegrityError
        If (external_issue_id, platform) already exists.
    ValueError
        If the id or repository URL fails validation.
    """
    external_id = validate_external_id(candidate.external_issue_id)
    url = validate_url(candidate.repository_url)
    conn.execute(
        """
        INSERT INTO candidates (
            id, external_issue_id, platform, repository_url, amount, currency,
            title, description, status, created_utc
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            candidate.id,
            external_id,
            candidate.platform.value,
            url,
            str(candidate.amount.amount) if candidate.amount else None,
            candidate.amount.currency if candidate.amount else None,
            candidate.title,
            candidate.description,
            CandidateStatus.OPEN.value,
            candidate.created_utc,
        ),
    )
    stored = get_candidate(conn, candidate.id)
    assert stored is not None
    return stored


def candidate_exists(conn: sqlite3.Connection, external_issue_id: str, platform: Platform) -> bool:
    row = conn.execute(
        "SELECT 1 FROM candidates WHERE external_issue_id = ? AND platform = ?",
        (external_issue_id.strip(), platform.value),
    ).fetchone()
    return row is not None


def get_candidate(conn: sqlite3.Connection, candidate_id: str) -> Candidate | None:
    """Fetch a single candidate by ID, or ``None`` if not found."""
    row = conn.execute("SELECT * FROM candidates WHERE id = ?", (candidate_id,)).fetchone()
    if row is None:
        return None
    return _row_to_candidate(row)


def require_candidate(conn: sqlite3.Connection, candidate_id: str) -> Candidate:
    candidate = get_candidate(conn, candidate_id)
    if candidate is None:
        raise CandidateNotFound(candidate_id)
    return candidate


def list_candidates(conn: sqlite3.Connection, status: CandidateStatus | None = None) -> list[Candidate]:
    """Return candidates, ordered by creation date."""
    if status is None:
        rows = conn.execute("SELECT * FROM candidates ORDER BY created_utc").fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM candidates WHERE status = ? ORDER BY created_utc", (status.value,)
        ).fetchall()
    return [_row_to_candidate(r) for r in rows]


def transition_candidate(
    conn: sqlite3.Connection,
    candidate_id: str,
    to_status: CandidateStatus,
    *,
    pull_request_id: str | None = None,
    failure_reason: str | None = None,
) -> TransitionEvent:
    """Move a candidate forward and return the audit event.

    Raises
    ------
    CandidateNotFound
        If the candidate does not exist.
    StateTransitionInvalid
        If the edge is not allowed or another writer moved it first.
    """
    current = require_candidate(conn, candidate_id)
    if to_status is CandidateStatus.IN_PROGRESS:
        updated = mark_in_progress(current)
    elif to_status is CandidateStatus.COMPLETED:
        if not pull_request_id:
            raise ValueError("pull_request_id is required to complete a candidate")
        updated = mark_completed(current, pull_request_id)
    elif to_status is CandidateStatus.FAILED:
        updated = mark_failed(current, failure_reason or "unspecified")
    else:
        raise StateTransitionInvalid(current.status.value, to_status.value)

    cur = conn.execute(
        """
        UPDATE candidates
           SET status = ?, started_utc = ?, completed_utc = ?, failed_utc = ?,
               pull_request_id = ?, failure_reason = ?
         WHERE id = ? AND status = ?
        """,
        (
            updated.status.value,
            updated.started_utc,
            updated.completed_utc,
            updated.failed_utc,
            updated.pull_request_id,
            updated.failure_reason,
            candidate_id,
            current.status.value,
        ),
    )
    if cur.rowcount != 1:
        raise StateTransitionInvalid(current.status.value, to_status.value)

    return transition(SubjectKind.CANDIDATE, candidate_id, current.status, updated.status)


def record_triage_reason(conn: sqlite3.Connection, candidate_id: str, reason: str) -> None:
    cur = conn.execute(
        "UPDATE candidates SET triage_reason = ? WHERE id = ?",
        (redact_secrets(reason)[:2000], candidate_id),
    )
    if cur.rowcount != 1:
        raise CandidateNotFound(candidate_id)


# ── Findings ────────────────────────────────────────────────
def insert_finding(conn: sqlite3.Connection, finding: Finding) -> Finding:
    """Persist a new finding (normally in ``detected`` state)."""
    url = validate_url(finding.repository_url)
    subject_id = validate_external_id(finding.subject_id, field_name="subject_id")
    cve_id = validate_cve_id(finding.cve_id) if finding.cve_id else None
    values = _finding_values(finding)
    values.update(repository_url=url, subject_id=subject_id, cve_id=cve_id)
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    conn.execute(f"INSERT INTO findings ({columns}) VALUES ({placeholders})", tuple(values.values()))
    stored = get_finding(conn, finding.id)
    assert stored is not None
    return stored


def update_finding(conn: sqlite3.Connection, finding: Finding) -> TransitionEvent | None:
    """Write *finding* over its stored row.

    Returns a :class:`TransitionEvent` when the status changed, ``None`` for a
    field-only revision.

    Raises
    ------
    FindingNotFound
        If the finding was never inserted.
    StateTransitionInvalid
        If the new status is not reachable from the stored one.
    """
    stored = get_finding(conn, finding.id)
    if stored is None:
        raise FindingNotFound(finding.id)

    changed = stored.status is not finding.status
    if changed and not can_transition(stored.status, finding.status):
        raise StateTransitionInvalid(stored.status.value, finding.status.value)

    values = _finding_values(finding)
    for immutable in ("id", "origin", "repository_url", "subject_id", "cve_id", "created_utc"):
        values.pop(immutable)
    assignments = ", ".join(f"{col} = ?" for col in values)
    cur = conn.execute(
        f"UPDATE findings SET {assignments} WHERE id = ? AND status = ?",
        (*values.values(), finding.id, stored.status.value),
    )
    if cur.rowcount != 1:
        raise StateTransitionInvalid(stored.status.value, finding.status.value)

    if not changed:
        return None
    return transition(SubjectKind.FINDING, finding.id, stored.status, finding.status)


def get_finding(conn: sqlite3.Connection, finding_id: str) -> Finding | None:
    row = conn.execute("SELECT * FROM findings WHERE id = ?", (finding_id,)).fetchone()
    if row is None:
        return None
    return _row_to_finding(row)


def require_finding(conn: sqlite3.Connection, finding_id: str) -> Finding:
    finding = get_finding(conn, finding_id)
    if finding is None:
        raise FindingNotFound(finding_id)
    return finding


def list_findings(
    conn: sqlite3.Connection,
    status: FindingStatus | None = None,
    repository_url: str | None = None,
) -> list[Finding]:
    """Return findings, ordered by creation date, optionally filtered."""
    clauses: list[str] = []
    params: list[Any] = []
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)
    if repository_url is not None:
        clauses.append("repository_url = ?")
        params.append(repository_url.rstrip("/"))
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(f"SELECT * FROM findings{where} ORDER BY created_utc", params).fetchall()
    return [_row_to_finding(r) for r in rows]


# ── Vulnerability patterns ─────────────────────────────────
def upsert_pattern(conn: sqlite3.Connection, pattern: VulnerabilityPattern) -> None:
    conn.execute(
        """
        INSERT INTO vulnerability_patterns (cve_id, language, summary, code_example,
                                            vulnerable_pattern, fixed_pattern)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(cve_id, language) DO UPDATE SET
            summary = excluded.summary,
            code_example = excluded.code_example,
            vulnerable_pattern = excluded.vulnerable_pattern,
            fixed_pattern = excluded.fixed_pattern
        """,
        (
            validate_cve_id(pattern.cve_id),
            pattern.language,
            pattern.summary,
            pattern.code_example,
            pattern.vulnerable_pattern,
            pattern.fixed_pattern,
        ),
    )


def get_pattern(conn: sqlite3.Connection, cve_id: str, language: str) -> VulnerabilityPattern | None:
    row = conn.execute(
        "SELECT * FROM vulnerability_patterns WHERE cve_id = ? AND lower(language) = lower(?)",
        (cve_id.strip().upper(), language),
    ).fetchone()
    return _row_to_pattern(row) if row else None


def list_patterns(conn: sqlite3.Connection, language: str) -> list[VulnerabilityPattern]:
    rows = conn.execute(
        "SELECT * FROM vulnerability_patterns WHERE lower(language) = lower(?) ORDER BY cve_id",
        (language,),
    ).fetchall()
    return [_row_to_pattern(r) for r in rows]


# ── Repositories ────────────────────────────────────────────
def register_repository(conn: sqlite3.Connection, url: str, language: str | None) -> None:
    conn.execute(
        "INSERT INTO repositories (url, language) VALUES (?, ?) "
        "ON CONFLICT(url) DO UPDATE SET language = excluded.language",
        (validate_url(url), language),
    )


def get_repository_language(conn: sqlite3.Connection, url: str) -> str | None:
    row = conn.execute("SELECT language FROM repositories WHERE url = ?", (url.rstrip("/"),)).fetchone()
    return row["language"] if row else None


# ── Reporting ───────────────────────────────────────────────
def count_by_status(conn: sqlite3.Connection, table: str) -> dict[str, int]:
    """Status histogram for ``candidates`` or ``findings``."""
    if table not in ("candidates", "findings"):
        raise ValueError(f"unknown table: {table}")
    rows = conn.execute(f"SELECT status, COUNT(*) AS n FROM {table} GROUP BY status").fetchall()
    return {row["status"]: row["n"] for row in rows}


# ── Row mapping ─────────────────────────────────────────────
def _finding_values(finding: Finding) -> dict[str, Any]:
    return {
        "id": finding.id,
        "origin": finding.origin.value,
        "repository_url": finding.repository_url,
        "subject_id": finding.subject_id,
        "cve_id": finding.cve_id,
        "candidate_id": finding.candidate_id,
        "language": finding.language,
        "title": finding.title,
        "description": finding.description,
        "commit_diff": finding.commit_diff,
        "status": finding.status.value,
        "root_cause_analysis": finding.root_cause_analysis,
        "root_cause_confidence": finding.root_cause_confidence,
        "presence_confidence": finding.presence_confidence,
        "fix_confidence": finding.fix_confidence,
        "affected_files": json.dumps(list(finding.affected_files)),
        "affected_code": json.dumps(dict(finding.affected_code), sort_keys=True),
        "recommended_fix": finding.recommended_fix,
        "verification_notes": redact_secrets(finding.verification_notes),
        "requires_human_review": int(finding.requires_human_review),
        "human_reviewed": int(finding.human_reviewed),
        "pull_request_id": finding.pull_request_id,
        "created_utc": finding.created_utc,
        "updated_utc": finding.updated_utc,
    }


def _row_to_candidate(row: sqlite3.Row) -> Candidate:
    return Candidate(
        id=row["id"],
        external_issue_id=row["external_issue_id"],
        platform=Platform(row["platform"]),
        repository_url=row["repository_url"],
        amount=Money.parse(row["amount"], row["currency"]),
        title=row["title"],
        description=row["description"],
        status=CandidateStatus(row["status"]),
        created_utc=row["created_utc"],
        started_utc=row["started_utc"],
        completed_utc=row["completed_utc"],
        failed_utc=row["failed_utc"],
        pull_request_id=row["pull_request_id"],
        failure_reason=row["failure_reason"],
        triage_reason=row["triage_reason"],
    )


def _row_to_finding(row: sqlite3.Row) -> Finding:
    return Finding(
        id=row["id"],
        origin=FindingOrigin(row["origin"]),
        repository_url=row["repository_url"],
        subject_id=row["subject_id"],
        cve_id=row["cve_id"],
        candidate_id=row["candidate_id"],
        language=row["language"],
        title=row["title"],
        description=row["description"],
        commit_diff=row["commit_diff"],
        status=FindingStatus(row["status"]),
        root_cause_analysis=row["root_cause_analysis"],
        root_cause_confidence=row["root_cause_confidence"],
        presence_confidence=row["presence_confidence"],
        fix_confidence=row["fix_confidence"],
        affected_files=tuple(json.loads(row["affected_files"])),
        affected_code=json.loads(row["affected_code"]),
        recommended_fix=row["recommended_fix"],
        verification_notes=row["verification_notes"],
        requires_human_review=bool(row["requires_human_review"]),
        human_reviewed=bool(row["human_reviewed"]),
        pull_request_id=row["pull_request_id"],
        created_utc=row["created_utc"],
        updated_utc=row["updated_utc"],
    )


def _row_to_pattern(row: sqlite3.Row) -> VulnerabilityPattern:
    return VulnerabilityPattern(
        cve_id=row["cve_id"],
        language=row["language"],
        summary=row["summary"],
        code_example=row["code_example"],
        vulnerable_pattern=row["vulnerable_pattern"],
        fixed_pattern=row["fixed_pattern"],
    )
