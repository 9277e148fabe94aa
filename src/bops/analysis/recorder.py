"""Persist findings as the staged verifier produces them.

:class:`FindingRecorder` is passed as ``on_transition`` to
:meth:`bops.analysis.pipeline.StagedVerifier.run`.  Each call writes the new
snapshot and, when the status moved, appends the transition to the audit
chain, both inside one ``BEGIN IMMEDIATE`` transaction.
"""

from __future__ import annotations

import sqlite3

from bops.core import audit
from bops.core.db import immediate
from bops.core.models import Finding
from bops.core.repository import get_finding, insert_finding, update_finding


class FindingRecorder:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def __call__(self, previous: Finding, current: Finding) -> None:
        with immediate(self.conn):
            # Findings that have not been stored yet are inserted in their
            # pre-stage state so the first status change is validated too.
            if get_finding(self.conn, previous.id) is None:
                insert_finding(self.conn, previous)
            event = update_finding(self.conn, current)
            if event is not None:
                audit.append(
                    self.conn,
                    event,
                    notes=_audit_note(current),
                )


def _audit_note(finding: Finding) -> str:
    parts = [f"requires_human_review={finding.requires_human_review}"]
    for label, value in (
        ("root_cause", finding.root_cause_confidence),
        ("presence", finding.presence_confidence),
        ("fix", finding.fix_confidence),
    ):
        if value is not None:
            parts.append(f"{label}={value:.2f}")
    if finding.cve_id:
        parts.append(f"cve={finding.cve_id}")
    return " ".join(parts)
