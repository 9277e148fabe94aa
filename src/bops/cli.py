"""bountyops CLI — presentation layer.

Thin adapter: all business logic lives in core / triage / analysis.
The CLI only maps user intents to domain calls and formats output.
"""

from __future__ import annotations

import json
import sqlite3
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import NoReturn

import structlog
import typer
from rich import print
from rich.table import Table

from bops.analysis.commits import CommitAnalyzer
from bops.analysis.context import StoredContextProvider
from bops.analysis.oracle import Oracle, build_oracle
from bops.analysis.pipeline import Gates, StagedVerifier
from bops.catalog import FeedFileProducer, load_pattern_catalog
from bops.core import audit
from bops.core.db import immediate, open_db
from bops.core.errors import AuditChainBroken, BOPSError, RepoRootNotFound
from bops.core.logging import configure_logging
from bops.core.models import CandidateStatus, Finding, FindingStatus
from bops.core.repository import (
    count_by_status,
    list_candidates,
    list_findings,
    register_repository,
    transition_candidate,
    upsert_pattern,
)
from bops.core.settings import Settings
from bops.triage.coordinator import IngestionCoordinator
from bops.triage.gate import FilteringGate
from bops.triage.queue import TriageQueue
from bops.worker import TriageWorker, run_pool

logger = structlog.get_logger()

app = typer.Typer(help="bountyops — triage paid bug-fix opportunities and verify fixes.")

_STATUS_COLORS = {
    "open": "white",
    "in_progress": "yellow",
    "completed": "green",
    "failed": "red",
    "detected": "white",
    "verified": "cyan",
    "fix_generated": "yellow",
    "fix_confirmed": "green",
    "human_review": "magenta",
}


# ── Callback (runs before every command) ────────────────────
@app.callback(invoke_without_command=True)
def _main_callback(  # pyright: ignore[reportUnusedFunction]
    ctx: typer.Context,
    log_level: str = typer.Option("INFO", "--log-level", envvar="BOPS_LOG_LEVEL", help="Log level."),
    log_json: bool = typer.Option(True, "--log-json/--log-text", envvar="BOPS_LOG_JSON", help="JSON or human logs."),
) -> None:
    """Configure logging + settings, then store in context for sub-commands."""
    configure_logging(level=log_level, json_output=log_json)
    try:
        settings = Settings(log_level=log_level, log_json=log_json)
    except RepoRootNotFound:
        print("[red]ERROR:[/red] could not find repo root (pyproject.toml not found in parents).")
        raise typer.Exit(code=2)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings

    if ctx.invoked_subcommand is None:
        print(ctx.get_help())


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


def _db(ctx: typer.Context) -> sqlite3.Connection:
    """Return an open DB connection, caching it in the context."""
    if "db" not in ctx.obj:
        s = _settings(ctx)
        s.ensure_dirs()
        ctx.obj["db"] = open_db(s.db_path)
    return ctx.obj["db"]


def _oracle(ctx: typer.Context) -> Oracle:
    if "oracle" not in ctx.obj:
        ctx.obj["oracle"] = build_oracle(_settings(ctx))
    return ctx.obj["oracle"]


def _verifier(ctx: typer.Context, conn: sqlite3.Connection) -> StagedVerifier:
    return StagedVerifier(_oracle(ctx), StoredContextProvider(conn), Gates.from_settings(_settings(ctx)))


def _fail(exc: Exception) -> NoReturn:
    print(f"[red]ERROR:[/red] {exc}")
    raise typer.Exit(code=1)


def _colored(status: str) -> str:
    color = _STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


# ── Setup ───────────────────────────────────────────────────
@app.command()
def status(ctx: typer.Context) -> None:
    """Show directories, database, queue and status counts."""
    s = _settings(ctx)

    print("[bold]bountyops[/bold]  v0.1.0")
    print(f"  Repo root   : {s.repo_root}")
    print(f"  Database    : {s.db_path}  {'[green]OK[/green]' if s.db_path.exists() else '[yellow]NOT CREATED[/yellow]'}")
    for label, d in (("Data", s.data_dir), ("Exports", s.exports_dir), ("Catalog", s.catalog_dir)):
        assert d is not None
        print(f"  {label:<12}: {d}  {'[green]OK[/green]' if d.exists() else '[yellow]MISSING[/yellow]'}")

    if s.db_path.exists():
        conn = _db(ctx)
        print(f"\n  Queue       : {TriageQueue(conn).size()} waiting")
        for table in ("candidates", "findings"):
            counts = count_by_status(conn, table)
            print(f"  {table.capitalize():<12}: {sum(counts.values())} total")
            for st, n in sorted(counts.items()):
                print(f"    {st:<14}: {n}")

    logger.info("status_checked", repo_root=str(s.repo_root))


@app.command()
def init(ctx: typer.Context) -> None:
    """Create local directories and the database."""
    s = _settings(ctx)
    s.ensure_dirs()
    _db(ctx)
    print("[green]bountyops initialised.[/green]  Directories + database ready.")
    logger.info("bops_initialised", repo_root=str(s.repo_root), db=str(s.db_path))


@app.command(name="repo-add")
def repo_add(
    ctx: typer.Context,
    url: str = typer.Argument(help="Repository URL."),
    language: str = typer.Option(..., "--language", "-l", help="Primary language of the repository."),
) -> None:
    """Register a repository and its primary language."""
    conn = _db(ctx)
    try:
        register_repository(conn, url, language)
    except ValueError as exc:
        _fail(exc)
    print(f"[green]Registered:[/green] {url}  ({language})")


@app.command(name="patterns-load")
def patterns_load(
    ctx: typer.Context,
    catalog: Path = typer.Argument(help="Vulnerability pattern catalog YAML."),
) -> None:
    """Load (or refresh) vulnerability patterns from a YAML catalog."""
    s = _settings(ctx)
    try:
        patterns = load_pattern_catalog(catalog, max_size_bytes=s.catalog_max_size_kb * 1024)
    except BOPSError as exc:
        _fail(exc)

    conn = _db(ctx)
    with immediate(conn):
        for p in patterns:
            upsert_pattern(conn, p)
    print(f"[green]Loaded[/green] {len(patterns)} patterns from {catalog}")
    logger.info("patterns_loaded", count=len(patterns), catalog=str(catalog))


@app.command()
def index(
    ctx: typer.Context,
    repository_url: str = typer.Argument(help="Repository URL the checkout belongs to."),
    language: str = typer.Option(..., "--language", "-l", help="Language to index."),
    path: Path = typer.Option(..., "--path", "-p", help="Local checkout directory."),
) -> None:
    """Build (or rebuild) the stored codebase summary for a repository."""
    provider = StoredContextProvider(_db(ctx))
    try:
        version = provider.rebuild(repository_url, language, path)
    except FileNotFoundError as exc:
        _fail(exc)
    print(f"[green]Indexed[/green] {repository_url} ({language})  version={version}")


# ── Triage ──────────────────────────────────────────────────
@app.command()
def ingest(
    ctx: typer.Context,
    feed: Path = typer.Argument(help="Candidate feed YAML."),
    minimum: str | None = typer.Option(None, "--minimum", help="Minimum amount (default from settings)."),
) -> None:
    """Ingest candidates from a feed: dedup, apply policy, gate and enqueue."""
    s = _settings(ctx)
    try:
        minimum_amount = Decimal(minimum) if minimum is not None else s.minimum_amount
    except InvalidOperation:
        _fail(ValueError(f"--minimum is not a number: {minimum!r}"))
    conn = _db(ctx)
    gate = FilteringGate(
        _oracle(ctx),
        max_amount=s.gate_max_amount,
        max_complexity=s.gate_max_complexity,
        supported_languages=s.gate_supported_languages,
    )
    coordinator = IngestionCoordinator(
        conn,
        gate,
        TriageQueue(conn),
        confidence_threshold=s.gate_min_confidence,
        max_estimated_minutes=s.gate_max_minutes,
    )
    try:
        report = coordinator.poll(
            FeedFileProducer(feed, max_size_bytes=s.catalog_max_size_kb * 1024),
            minimum_amount,
        )
    except (BOPSError, ValueError) as exc:
        _fail(exc)

    table = Table(title=f"Ingest: {feed.name}")
    table.add_column("Issue", style="bold")
    table.add_column("Platform")
    table.add_column("Amount", justify="right")
    table.add_column("Outcome")
    table.add_column("Reason")
    for r in report.results:
        amount = str(r.candidate.amount.amount) if r.candidate.amount else "-"
        table.add_row(r.candidate.external_issue_id, r.candidate.platform.value, amount, r.outcome.value, r.reason or "")
    print(table)
    print("  " + "  ".join(f"{k}={v}" for k, v in report.counts.items()))


@app.command(name="queue")
def queue_cmd(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Entries to show."),
) -> None:
    """Show the triage queue in dequeue order."""
    q = TriageQueue(_db(ctx))
    entries = q.peek(limit)
    if not entries:
        print("[yellow]Queue is empty.[/yellow]")
        return
    table = Table(title=f"Triage queue ({q.size()} waiting)")
    table.add_column("Score", justify="right")
    table.add_column("Issue", style="bold")
    table.add_column("Platform")
    table.add_column("Repository")
    table.add_column("Title")
    for candidate, score in entries:
        table.add_row(f"{score:.2f}", candidate.external_issue_id, candidate.platform.value,
                      candidate.repository_url, candidate.title or "")
    print(table)


@app.command()
def triage(
    ctx: typer.Context,
    limit: int | None = typer.Option(None, "--limit", help="Max candidates per worker."),
    workers: int | None = typer.Option(None, "--workers", "-w", help="Concurrent workers (default from settings)."),
) -> None:
    """Drain the queue: verify each candidate's root cause and generate a fix."""
    s = _settings(ctx)
    count = workers or s.worker_count
    if count <= 1:
        conn = _db(ctx)
        results = TriageWorker(conn, TriageQueue(conn), _verifier(ctx, conn)).drain(limit)
    else:
        _db(ctx)  # schema must exist before workers open their own connections
        _oracle(ctx)  # one shared Oracle (and breaker) for all workers
        results = run_pool(
            s.db_path,
            lambda conn: TriageWorker(conn, TriageQueue(conn), _verifier(ctx, conn)),
            count,
            limit,
        )
    if not results:
        print("[yellow]Nothing processed.[/yellow]")
        return
    _print_findings(results, title=f"Triage results ({len(results)})")


@app.command(name="analyze-commit")
def analyze_commit(
    ctx: typer.Context,
    repo: str = typer.Option(..., "--repo", help="Repository URL."),
    commit: str = typer.Option(..., "--commit", help="Commit id."),
    diff: Path = typer.Option(..., "--diff", help="File holding the unified diff."),
    language: str = typer.Option(..., "--language", "-l", help="Repository language."),
    files: list[str] = typer.Option([], "--file", "-f", help="Affected file (repeatable)."),
) -> None:
    """Screen a commit against the vulnerability catalog and verify matches."""
    conn = _db(ctx)
    try:
        diff_text = diff.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        _fail(exc)

    provider = StoredContextProvider(conn)
    analyzer = CommitAnalyzer(conn, _oracle(ctx), provider, _verifier(ctx, conn))
    try:
        results = analyzer.analyze(repo, commit, diff_text, files, language)
    except (BOPSError, ValueError) as exc:
        _fail(exc)
    if not results:
        print("[green]No catalog patterns matched this commit.[/green]")
        return
    _print_findings(results, title=f"Commit {commit[:12]}")


# ── Records ─────────────────────────────────────────────────
@app.command()
def candidates(
    ctx: typer.Context,
    status_filter: str | None = typer.Option(None, "--status", "-s", help="Filter by status."),
) -> None:
    """List stored candidates."""
    try:
        wanted = CandidateStatus(status_filter) if status_filter else None
    except ValueError:
        _fail(ValueError(f"invalid status {status_filter!r}; valid: {', '.join(s.value for s in CandidateStatus)}"))

    rows = list_candidates(_db(ctx), wanted)
    if not rows:
        print("[yellow]No candidates.[/yellow]")
        return
    table = Table(title="Candidates")
    table.add_column("ID", style="bold")
    table.add_column("Issue")
    table.add_column("Platform")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Note")
    for c in rows:
        table.add_row(
            c.id[:12],
            c.external_issue_id,
            c.platform.value,
            str(c.amount.amount) if c.amount else "-",
            _colored(c.status.value),
            c.failure_reason or c.triage_reason or c.pull_request_id or "",
        )
    print(table)


@app.command()
def findings(
    ctx: typer.Context,
    status_filter: str | None = typer.Option(None, "--status", "-s", help="Filter by status."),
) -> None:
    """List stored findings."""
    try:
        wanted = FindingStatus(status_filter) if status_filter else None
    except ValueError:
        _fail(ValueError(f"invalid status {status_filter!r}; valid: {', '.join(s.value for s in FindingStatus)}"))

    rows = list_findings(_db(ctx), wanted)
    if not rows:
        print("[yellow]No findings.[/yellow]")
        return
    _print_findings(rows, title="Findings")


@app.command()
def complete(
    ctx: typer.Context,
    candidate_id: str = typer.Argument(help="Candidate id."),
    pr: str = typer.Option(..., "--pr", help="Pull request id that resolved it."),
) -> None:
    """Mark an in-progress candidate completed."""
    _finish(ctx, candidate_id, CandidateStatus.COMPLETED, pull_request_id=pr)


@app.command()
def fail(
    ctx: typer.Context,
    candidate_id: str = typer.Argument(help="Candidate id."),
    reason: str = typer.Option(..., "--reason", "-r", help="Why it failed."),
) -> None:
    """Mark a candidate failed."""
    _finish(ctx, candidate_id, CandidateStatus.FAILED, failure_reason=reason)


def _finish(ctx: typer.Context, candidate_id: str, to: CandidateStatus, **kwargs: str) -> None:
    conn = _db(ctx)
    try:
        with immediate(conn):
            event = transition_candidate(conn, candidate_id, to, **kwargs)
            entry_hash = audit.append(conn, event, notes=next(iter(kwargs.values()), ""))
    except (BOPSError, ValueError) as exc:
        _fail(exc)
    print(
        f"[green]Transitioned:[/green] {candidate_id}  "
        f"{event.from_status} → {event.to_status}  hash={entry_hash[:12]}…"
    )


# ── Audit ───────────────────────────────────────────────────
@app.command(name="verify-chain")
def verify_chain_cmd(ctx: typer.Context) -> None:
    """Verify the integrity of the audit chain (tamper detection)."""
    try:
        count = audit.verify_chain(_db(ctx))
    except AuditChainBroken as exc:
        print(f"[red bold]INTEGRITY FAILURE:[/red bold] {exc}")
        raise typer.Exit(code=1)
    print(f"[green]Chain OK[/green] — {count} events verified, no tampering detected.")


@app.command(name="export-audit")
def export_audit_cmd(
    ctx: typer.Context,
    output: Path | None = typer.Option(None, "--output", "-o", help="Output file (default: exports/audit.json)."),
    subject: str | None = typer.Option(None, "--subject", help="Only this candidate/finding id."),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Verify chain before exporting."),
) -> None:
    """Export the audit trail to JSON (HMAC-signed when a key is configured)."""
    s = _settings(ctx)
    conn = _db(ctx)
    if verify:
        try:
            audit.verify_chain(conn)
        except AuditChainBroken as exc:
            print(f"[red bold]INTEGRITY FAILURE:[/red bold] {exc}")
            print("[yellow]Export aborted. Use --no-verify to force.[/yellow]")
            raise typer.Exit(code=1)

    events = audit.export_audit(conn, subject_id=subject)
    if output is None:
        assert s.exports_dir is not None
        s.exports_dir.mkdir(parents=True, exist_ok=True)
        output = s.exports_dir / "audit.json"

    blob = json.dumps(events, indent=2, default=str)
    output.write_text(blob, encoding="utf-8")
    print(f"[green]Exported[/green] {len(events)} events → {output}")

    signature = audit.compute_hmac(blob, env_var=s.audit_key_env)
    if signature is not None:
        sig_path = output.with_name(output.name + ".hmac")
        sig_path.write_text(signature + "\n", encoding="utf-8")
        print(f"  HMAC-SHA256 → {sig_path}")


def _print_findings(rows: list[Finding], *, title: str) -> None:
    table = Table(title=title)
    table.add_column("ID", style="bold")
    table.add_column("Origin")
    table.add_column("Subject")
    table.add_column("CVE")
    table.add_column("Status")
    table.add_column("Conf.", justify="right")
    table.add_column("Review")
    for f in rows:
        conf = f.fix_confidence if f.fix_confidence is not None else (
            f.root_cause_confidence if f.root_cause_confidence is not None else f.presence_confidence
        )
        table.add_row(
            f.id[:12],
            f.origin.value,
            f.subject_id,
            f.cve_id or "",
            _colored(f.status.value),
            f"{conf:.2f}" if conf is not None else "-",
            "[red]yes[/red]" if f.needs_human_review else "no",
        )
    print(table)


# ── Entrypoint ──────────────────────────────────────────────
def main() -> None:  # noqa: D103
    app()
