"""Priority triage queue backed by the ``triage_queue`` table.

Admitted candidates wait here ordered by score (the bounty amount), highest
first; equal scores come out in enqueue order.

``dequeue()`` is the one point in the system where workers must not race: it
selects and deletes the top row inside a single ``BEGIN IMMEDIATE``
transaction, so with any number of connections (threads or processes)
pulling concurrently each entry is handed to exactly one caller.
"""

from __future__ import annotations

import sqlite3

import structlog

from bops.core.db import immediate
from bops.core.models import Candidate

logger = structlog.get_logger()


class TriageQueue:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def enqueue(self, candidate: Candidate) -> float:
        """Add (or re-score) *candidate*; returns the score used."""
        score = candidate.priority_score()
        self.conn.execute(
            """
            INSERT INTO triage_queue (candidate_id, payload, score) VALUES (?, ?, ?)
            ON CONFLICT(candidate_id) DO UPDATE SET payload = excluded.payload, score = excluded.score
            """,
            (candidate.id, candidate.to_json(), score),
        )
        logger.info("candidate_enqueued", candidate_id=candidate.id, score=score)
        return score

    def dequeue(self) -> Candidate | None:
        """Atomically pop the highest-scoring candidate, or ``None`` if empty."""
        with immediate(self.conn):
            row = self.conn.execute(
                "SELECT seq, candidate_id, payload, score FROM triage_queue ORDER BY score DESC, seq ASC LIMIT 1"
            ).fetchone()
            if row is None:
                return None
            self.conn.execute("DELETE FROM triage_queue WHERE seq = ?", (row["seq"],))

        logger.info("candidate_dequeued", candidate_id=row["candidate_id"], score=row["score"])
        return Candidate.from_json(row["payload"])

    def remove(self, candidate: Candidate | str) -> bool:
        """Drop a queued candidate by id.  Returns whether anything was removed."""
        candidate_id = candidate if isinstance(candidate, str) else candidate.id
        cur = self.conn.execute("DELETE FROM triage_queue WHERE candidate_id = ?", (candidate_id,))
        removed = cur.rowcount > 0
        if removed:
            logger.info("candidate_removed_from_queue", candidate_id=candidate_id)
        return removed

    def size(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM triage_queue").fetchone()[0]

    def is_empty(self) -> bool:
        return self.size() == 0

    def peek(self, limit: int = 20) -> list[tuple[Candidate, float]]:
        """Top *limit* entries in dequeue order, without removing them."""
        rows = self.conn.execute(
            "SELECT payload, score FROM triage_queue ORDER BY score DESC, seq ASC LIMIT ?", (limit,)
        ).fetchall()
        return [(Candidate.from_json(r["payload"]), r["score"]) for r in rows]
