"""Triage workers: pull admitted candidates and drive their findings.

Each worker owns its own SQLite connection.  Workers share nothing but the
database; the queue's atomic pop guarantees a candidate is handed to one
worker only, and the audit chain serialises its own appends.
"""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

import structlog

from bops.analysis.pipeline import StagedVerifier
from bops.analysis.recorder import FindingRecorder
from bops.core import audit
from bops.core.db import immediate, open_db
from bops.core.errors import StateTransitionInvalid
from bops.core.models import CandidateStatus, Finding, FindingOrigin
from bops.core.repository import (
    get_repository_language,
    insert_finding,
    require_candidate,
    transition_candidate,
)
from bops.triage.queue import TriageQueue

logger = structlog.get_logger()


class TriageWorker:
    def __init__(self, conn: sqlite3.Connection, queue: TriageQueue, verifier: StagedVerifier) -> None:
        self.conn = conn
        self.queue = queue
        self.verifier = verifier

    def process_next(self) -> Finding | None:
        """Handle one queued candidate.

        Returns the final finding, or ``None`` when the queue is empty, the
        dequeued candidate was no longer open, or the pipeline crashed (the
        candidate is then marked failed with the error as its reason).

        Raises
        ------
        CandidateNotFound
            If the queued candidate is missing from the store.
        """
        queued = self.queue.dequeue()
        if queued is None:
            return None

        candidate = require_candidate(self.conn, queued.id)
        if candidate.status is not CandidateStatus.OPEN:
            logger.info("candidate_skipped_not_open", candidate_id=candidate.id, status=candidate.status.value)
            return None

        try:
            with immediate(self.conn):
                event = transition_candidate(self.conn, candidate.id, CandidateStatus.IN_PROGRESS)
                audit.append(self.conn, event, notes=f"score={candidate.priority_score()}")
        except StateTransitionInvalid:
            # Another worker claimed it between our read and write.
            logger.info("candidate_claimed_elsewhere", candidate_id=candidate.id)
            return None

        log = logger.bind(candidate_id=candidate.id, external_issue_id=candidate.external_issue_id)
        try:
            finding = insert_finding(
                self.conn,
                Finding(
                    origin=FindingOrigin.ISSUE,
                    repository_url=candidate.repository_url,
                    subject_id=candidate.external_issue_id,
                    candidate_id=candidate.id,
                    language=get_repository_language(self.conn, candidate.repository_url),
                    title=candidate.title,
                    description=candidate.description,
                ),
            )
            log.info("finding_created", finding_id=finding.id)
            return self.verifier.run(finding, on_transition=FindingRecorder(self.conn))
        except Exception as exc:
            log.exception("worker_pipeline_failed")
            with immediate(self.conn):
                event = transition_candidate(
                    self.conn,
                    candidate.id,
                    CandidateStatus.FAILED,
                    failure_reason=f"{type(exc).__name__}: {exc}",
                )
                audit.append(self.conn, event, notes="pipeline error")
            return None

    def drain(self, limit: int | None = None) -> list[Finding]:
        """Process candidates until the queue is empty or *limit* have been taken."""
        findings: list[Finding] = []
        taken = 0
        while limit is None or taken < limit:
            if self.queue.is_empty():
                break
            taken += 1
            finding = self.process_next()
            if finding is not None:
                findings.append(finding)
        return findings


WorkerFactory = Callable[[sqlite3.Connection], TriageWorker]


def run_pool(
    db_path: Path,
    build_worker: WorkerFactory,
    count: int,
    limit: int | None = None,
) -> list[Finding]:
    """Run *count* workers concurrently, each on its own connection.

    *limit* caps the candidates each worker takes.
    """

    def _run(index: int) -> list[Finding]:
        conn = open_db(db_path)
        try:
            structlog.contextvars.bind_contextvars(worker=index)
            return build_worker(conn).drain(limit)
        finally:
            structlog.contextvars.unbind_contextvars("worker")
            conn.close()

    findings: list[Finding] = []
    with ThreadPoolExecutor(max_workers=count, thread_name_prefix="bops-worker") as pool:
        for result in pool.map(_run, range(count)):
            findings.extend(result)
    logger.info("worker_pool_finished", workers=count, findings=len(findings))
    return findings
