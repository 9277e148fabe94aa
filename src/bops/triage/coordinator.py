"""Ingestion coordinator: dedup, minimum-amount policy, gating, enqueue.

Upstream producers poll third-party platforms and happily return the same
issue on every pass, sometimes from several pollers at once.  For each
produced candidate the coordinator:

1. skips it if (external_issue_id, platform) is already stored;
2. skips it if it has no amount or the amount is below the minimum;
3. persists it as ``open``, or records it as ``invalid`` when its identity
   or repository URL fails validation;
4. asks the gate; admitted candidates are enqueued, rejected ones keep the
   gate's reason in ``triage_reason``.

Persisting before gating means a gate failure can only cost an enqueue,
never the candidate itself.  The check in step 1 is an optimisation; the
store's unique constraint is the real guard, and an ``IntegrityError`` from
a concurrent insert is reported as a duplicate.
"""

from __future__ import annotations

import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable, Protocol

import structlog

from bops.core.models import Candidate
from bops.core.repository import (
    candidate_exists,
    get_repository_language,
    insert_candidate,
    record_triage_reason,
)
from bops.triage.gate import FilteringGate, Verdict
from bops.triage.queue import TriageQueue

logger = structlog.get_logger()


class IngestOutcome(str, Enum):
    DUPLICATE = "duplicate"
    BELOW_MINIMUM = "below_minimum"
    INVALID = "invalid"
    REJECTED = "rejected"
    ENQUEUED = "enqueued"


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    candidate: Candidate
    reason: str | None = None
    verdict: Verdict | None = None


@dataclass
class PollReport:
    source: str
    results: list[IngestResult] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        tally = Counter(r.outcome.value for r in self.results)
        return {o.value: tally.get(o.value, 0) for o in IngestOutcome}


class CandidateProducer(Protocol):
    name: str

    def fetch(self) -> Iterable[Candidate]: ...


class IngestionCoordinator:
    def __init__(
        self,
        conn: sqlite3.Connection,
        gate: FilteringGate,
        queue: TriageQueue,
        *,
        confidence_threshold: float = 0.0,
        max_estimated_minutes: int | None = None,
    ) -> None:
        self.conn = conn
        self.gate = gate
        self.queue = queue
        self.confidence_threshold = confidence_threshold
        self.max_estimated_minutes = max_estimated_minutes

    def process(self, candidate: Candidate, minimum_amount: Decimal) -> IngestResult:
        log = logger.bind(external_issue_id=candidate.external_issue_id, platform=candidate.platform.value)

        if candidate_exists(self.conn, candidate.external_issue_id, candidate.platform):
            log.debug("candidate_duplicate")
            return IngestResult(IngestOutcome.DUPLICATE, candidate)

        if not candidate.meets_minimum(minimum_amount):
            shown = candidate.amount.amount if candidate.amount else "none"
            reason = f"amount {shown} below minimum {minimum_amount}"
            log.info("candidate_below_minimum", reason=reason)
            return IngestResult(IngestOutcome.BELOW_MINIMUM, candidate, reason=reason)

        try:
            stored = insert_candidate(self.conn, candidate)
        except sqlite3.IntegrityError:
            log.info("candidate_duplicate_on_insert")
            return IngestResult(IngestOutcome.DUPLICATE, candidate)
        except ValueError as exc:
            log.warning("candidate_invalid", reason=str(exc))
            return IngestResult(IngestOutcome.INVALID, candidate, reason=str(exc))

        language = get_repository_language(self.conn, stored.repository_url)
        verdict = self.gate.decide(
            stored,
            self.confidence_threshold,
            self.max_estimated_minutes,
            language=language,
        )
        if not verdict.admit:
            record_triage_reason(self.conn, stored.id, verdict.reason)
            log.info("candidate_rejected", candidate_id=stored.id, reason=verdict.reason)
            return IngestResult(IngestOutcome.REJECTED, stored, reason=verdict.reason, verdict=verdict)

        self.queue.enqueue(stored)
        return IngestResult(IngestOutcome.ENQUEUED, stored, reason=verdict.reason, verdict=verdict)

    def poll(self, producer: CandidateProducer, minimum_amount: Decimal) -> PollReport:
        """Run everything *producer* yields through :meth:`process`.

        Producer failures propagate; per-candidate outcomes never do.
        """
        report = PollReport(source=getattr(producer, "name", type(producer).__name__))
        for candidate in producer.fetch():
            report.results.append(self.process(candidate, minimum_amount))
        logger.info("poll_finished", source=report.source, **report.counts)
        return report
