"""SQLite database manager.

Owns the connection lifecycle, schema creation, and migration.
Every other module that needs the DB receives the connection from here;
they never open their own.

Design decisions
----------------
* WAL mode so workers can read while another connection writes.
* ``busy_timeout`` so a worker waiting on the queue's write lock blocks
  briefly instead of failing with ``database is locked``.
* Foreign keys enforced.
* ``CREATE TABLE IF NOT EXISTS``: idempotent, safe to call on every start.
* ``UNIQUE(external_issue_id, platform)`` on candidates is the real guard
  against duplicate ingestion; callers treat the ``IntegrityError`` as
  "already exists".
"""

from __future__ import annotations

import sqlite3
import stat
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

logger = structlog.get_logger()

# ── Schema version (bump when tables change) ────────────────
SCHEMA_VERSION = 1

BUSY_TIMEOUT_MS = 10_000

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS candidates (
    id                 TEXT PRIMARY KEY,
    external_issue_id  TEXT NOT NULL,
    platform           TEXT NOT NULL,
    repository_url     TEXT NOT NULL,
    amount             TEXT,
    currency           TEXT,
    title              TEXT,
    description        TEXT,
    status             TEXT NOT NULL DEFAULT 'open',
    created_utc        TEXT NOT NULL,
    started_utc        TEXT,
    completed_utc      TEXT,
    failed_utc         TEXT,
    pull_request_id    TEXT,
    failure_reason     TEXT,
    triage_reason      TEXT,
    UNIQUE (external_issue_id, platform)
);

CREATE INDEX IF NOT EXISTS idx_candidates_status ON candidates(status);

CREATE TABLE IF NOT EXISTS findings (
    id                     TEXT PRIMARY KEY,
    origin                 TEXT NOT NULL,
    repository_url         TEXT NOT NULL,
    subject_id             TEXT NOT NULL,
    cve_id                 TEXT,
    candidate_id           TEXT REFERENCES candidates(id),
    language               TEXT,
    title                  TEXT,
    description            TEXT,
    commit_diff            TEXT,
    status                 TEXT NOT NULL DEFAULT 'detected',
    root_cause_analysis    TEXT,
    root_cause_confidence  REAL,
    presence_confidence    REAL,
    fix_confidence         REAL,
    affected_files         TEXT NOT NULL DEFAULT '[]',
    affected_code          TEXT NOT NULL DEFAULT '{}',
    recommended_fix        TEXT,
    verification_notes     TEXT NOT NULL DEFAULT '',
    requires_human_review  INTEGER NOT NULL DEFAULT 0,
    human_reviewed         INTEGER NOT NULL DEFAULT 0,
    pull_request_id        TEXT,
    created_utc            TEXT NOT NULL,
    updated_utc            TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_findings_status ON findings(status);
CREATE INDEX IF NOT EXISTS idx_findings_repo ON findings(repository_url);

CREATE TABLE IF NOT EXISTS vulnerability_patterns (
    cve_id              TEXT NOT NULL,
    language            TEXT NOT NULL,
    summary             TEXT NOT NULL,
    code_example        TEXT,
    vulnerable_pattern  TEXT,
    fixed_pattern       TEXT,
    PRIMARY KEY (cve_id, language)
);

CREATE TABLE IF NOT EXISTS repositories (
    url       TEXT PRIMARY KEY,
    language  TEXT
);

CREATE TABLE IF NOT EXISTS codebase_index (
    repository_url  TEXT NOT NULL,
    language        TEXT NOT NULL,
    index_data      TEXT NOT NULL,
    version         INTEGER NOT NULL DEFAULT 1,
    updated_utc     TEXT NOT NULL,
    PRIMARY KEY (repository_url, language)
);

-- Priority triage queue: one row per admitted candidate.
CREATE TABLE IF NOT EXISTS triage_queue (
    seq           INTEGER PRIMARY KEY AUTOINCREMENT,
    candidate_id  TEXT NOT NULL UNIQUE,
    payload       TEXT NOT NULL,
    score         REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_triage_queue_score ON triage_queue(score DESC, seq ASC);

-- Append-only event log (the audit trail)
CREATE TABLE IF NOT EXISTS events (
    seq           INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_kind  TEXT    NOT NULL,
    subject_id    TEXT    NOT NULL,
    from_status   TEXT    NOT NULL,
    to_status     TEXT    NOT NULL,
    at_utc        TEXT    NOT NULL,
    entry_hash    TEXT    NOT NULL,
    prev_hash     TEXT    NOT NULL DEFAULT '',
    notes         TEXT    NOT NULL DEFAULT ''
);

-- Schema metadata
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS events_no_update
    BEFORE UPDATE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events table is append-only: UPDATE blocked');
    END;

CREATE TRIGGER IF NOT EXISTS events_no_delete
    BEFORE DELETE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events table is append-only: DELETE blocked');
    END;
"""


def open_db(db_path: Path) -> sqlite3.Connection:
    """Open (or create) the bountyops database and ensure the schema exists.

    Parameters
    ----------
    db_path:
        Absolute path to the SQLite file (e.g. ``data/bops.db``).

    Returns
    -------
    sqlite3.Connection
        Autocommit connection (explicit ``BEGIN`` for multi-statement
        writes) with WAL mode and foreign keys enabled.  Each worker thread
        should open its own.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        isolation_level=None,
        check_same_thread=False,
        timeout=BUSY_TIMEOUT_MS / 1000,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")

    conn.executescript(_SCHEMA_SQL)

    conn.execute(
        "INSERT OR IGNORE INTO meta(key, value) VALUES (?, ?)",
        ("schema_version", str(SCHEMA_VERSION)),
    )

    # Owner read/write only.
    try:
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ("-wal", "-shm"):
            wal = db_path.parent / (db_path.name + suffix)
            if wal.exists():
                wal.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        # Best effort; may fail on non-POSIX systems.
        pass

    logger.debug("database_opened", path=str(db_path), schema_version=SCHEMA_VERSION)
    return conn


@contextmanager
def immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` (write lock taken up front).

    Re-entrant: if the connection is already inside a transaction the block
    simply joins it and the outer owner commits.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")
