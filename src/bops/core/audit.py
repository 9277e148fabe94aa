"""Append-only audit log with hash chain.

Every candidate and finding status change is recorded here.

How it works
------------
1. A status change produces a :class:`TransitionEvent`.
2. ``append()`` serialises the event canonically (sorted JSON, no spaces).
3. Computes ``entry_hash = SHA-256(canonical_blob + prev_hash)``.
4. Inserts an immutable row into the ``events`` table.

Steps 3 and 4 run under ``BEGIN IMMEDIATE``: several workers append
concurrently, and reading the tail hash outside the write lock would let two
of them link to the same predecessor and fork the chain.

Verification
------------
``verify_chain()`` recomputes every hash in sequence order; an edited,
deleted or reordered row raises :class:`AuditChainBroken`.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import sqlite3

import structlog

from bops.core.db import immediate
from bops.core.errors import AuditChainBroken
from bops.core.guard import sanitise_notes
from bops.core.state import SubjectKind, TransitionEvent

logger = structlog.get_logger()

_COLUMNS = "seq, subject_kind, subject_id, from_status, to_status, at_utc, entry_hash, prev_hash, notes"


def append(conn: sqlite3.Connection, event: TransitionEvent, *, notes: str = "") -> str:
    """Append an event to the audit log and return its ``entry_hash``.

    Parameters
    ----------
    conn:
        Database connection (from :func:`bops.core.db.open_db`).
    event:
        The transition event to record.
    notes:
        Optional free-text annotation.  Included in the hash so edits to
        notes are detectable.
    """
    notes = sanitise_notes(notes)
    canonical = _canonical_blob(event, notes=notes)

    with immediate(conn):
        prev_hash = _get_last_hash(conn)
        entry_hash = hashlib.sha256((canonical + prev_hash).encode("utf-8")).hexdigest()
        cur = conn.execute(
            """
            INSERT INTO events (subject_kind, subject_id, from_status, to_status,
                                at_utc, entry_hash, prev_hash, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.subject_kind.value,
                event.subject_id,
                event.from_status,
                event.to_status,
                event.at_utc,
                entry_hash,
                prev_hash,
                notes,
            ),
        )

    logger.info(
        "audit_event_appended",
        subject_kind=event.subject_kind.value,
        subject_id=event.subject_id,
        transition=f"{event.from_status}→{event.to_status}",
        entry_hash=entry_hash[:12],
        seq=cur.lastrowid,
    )
    return entry_hash


def verify_chain(conn: sqlite3.Connection) -> int:
    """Verify the full hash chain.  Returns the number of events checked.

    Raises
    ------
    AuditChainBroken
        If any link or hash does not match.
    """
    rows = conn.execute(f"SELECT {_COLUMNS} FROM events ORDER BY seq").fetchall()

    expected_prev = ""
    checked = 0
    for row in rows:
        seq = row["seq"]
        if row["prev_hash"] != expected_prev:
            raise AuditChainBroken(
                f"Chain broken at seq={seq}: expected prev_hash={expected_prev[:12]}... "
                f"but found {row['prev_hash'][:12]}..."
            )

        event = TransitionEvent(
            subject_kind=SubjectKind(row["subject_kind"]),
            subject_id=row["subject_id"],
            from_status=row["from_status"],
            to_status=row["to_status"],
            at_utc=row["at_utc"],
        )
        canonical = _canonical_blob(event, notes=row["notes"])
        recomputed = hashlib.sha256((canonical + row["prev_hash"]).encode("utf-8")).hexdigest()
        if recomputed != row["entry_hash"]:
            raise AuditChainBroken(
                f"Tamper detected at seq={seq}: recomputed hash={recomputed[:12]}... "
                f"does not match stored={row['entry_hash'][:12]}..."
            )

        expected_prev = row["entry_hash"]
        checked += 1

    logger.info("audit_chain_verified", events_checked=checked)
    return checked


def export_audit(conn: sqlite3.Connection, *, subject_id: str | None = None) -> list[dict[str, str | int]]:
    """Export the audit log (optionally one subject's history) as a list of dicts."""
    if subject_id is None:
        rows = conn.execute(f"SELECT {_COLUMNS} FROM events ORDER BY seq").fetchall()
    else:
        rows = conn.execute(
            f"SELECT {_COLUMNS} FROM events WHERE subject_id = ? ORDER BY seq", (subject_id,)
        ).fetchall()
    return [dict(row) for row in rows]


def compute_hmac(data: str, *, env_var: str = "BOPS_AUDIT_KEY") -> str | None:
    """HMAC-SHA256 over an export, or ``None`` when no key is configured.

    The hash chain is the primary guarantee; the HMAC only lets a recipient
    check that an exported file came from a holder of the key.
    """
    key = os.environ.get(env_var, "").strip()
    if not key:
        return None
    return hmac.new(key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


# ── Internal helpers ────────────────────────────────────────
def _canonical_blob(event: TransitionEvent, *, notes: str = "") -> str:
    obj: dict[str, str] = {
        "at_utc": event.at_utc,
        "from_status": event.from_status,
        "notes": notes,
        "subject_id": event.subject_id,
        "subject_kind": event.subject_kind.value,
        "to_status": event.to_status,
    }
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def _get_last_hash(conn: sqlite3.Connection) -> str:
    row = conn.execute("SELECT entry_hash FROM events ORDER BY seq DESC LIMIT 1").fetchone()
    return row["entry_hash"] if row else ""
