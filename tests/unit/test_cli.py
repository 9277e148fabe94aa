"""End-to-end tests for the bops CLI (scripted Oracle, temporary repo root)."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog
from conftest import FIX, FIX_REVIEW, GATE, PREFILTER, PRESENCE, ROOT_CAUSE, ScriptedOracle, admit_reply
from typer.testing import CliRunner

from bops.cli import app
from bops.core.db import open_db
from bops.core.models import CandidateStatus, FindingStatus
from bops.core.repository import list_candidates, list_findings

runner = CliRunner()

_ROUTES = {
    GATE: admit_reply(),
    ROOT_CAUSE: {"rootCause": "missing guard", "affectedFiles": ["w.py"], "confidence": 0.9},
    FIX: {"fixCode": "if not xs:\n    return None"},
    FIX_REVIEW: {"correct": True, "confidence": 0.9},
    PREFILTER: ["CVE-2021-44228"],
    PRESENCE: {"present": True, "confidence": 0.2},
}

_FEED = """\
candidates:
  - id: 42
    platform: algora
    repository: https://github.com/acme/widgets
    amount: "200.00"
    title: Crash on empty list
  - id: 43
    platform: algora
    repository: https://github.com/acme/widgets
    amount: "5.00"
"""

_CATALOG = """\
patterns:
  - cve_id: CVE-2021-44228
    language: java
    summary: Log4Shell JNDI lookup
"""


@pytest.fixture()
def env(tmp_path: Path, monkeypatch) -> dict[str, str]:
    monkeypatch.delenv("BOPS_AUDIT_KEY", raising=False)
    return {"BOPS_REPO_ROOT": str(tmp_path), "BOPS_LOG_LEVEL": "WARNING"}


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()


@pytest.fixture()
def oracle() -> ScriptedOracle:
    return ScriptedOracle(dict(_ROUTES))


def _run(args: list[str], env: dict[str, str], oracle: ScriptedOracle | None = None):
    return runner.invoke(app, args, env=env, obj={"oracle": oracle or ScriptedOracle()})


def _candidates(tmp_path: Path):
    conn = open_db(tmp_path / "data" / "bops.db")
    try:
        return list_candidates(conn)
    finally:
        conn.close()


class TestSetup:
    def test_init_creates_layout(self, tmp_path: Path, env) -> None:
        result = _run(["init"], env)
        assert result.exit_code == 0, result.output
        assert (tmp_path / "data" / "bops.db").is_file()
        assert (tmp_path / "exports").is_dir()

    def test_status_before_and_after_init(self, env) -> None:
        assert "Queue" not in _run(["status"], env).output
        _run(["init"], env)
        result = _run(["status"], env)
        assert result.exit_code == 0
        assert "0 waiting" in result.output

    def test_repo_add_rejects_bad_url(self, env) -> None:
        result = _run(["repo-add", "ftp://x.io/r", "--language", "python"], env)
        assert result.exit_code == 1
        assert "ERROR" in result.output

    def test_patterns_load(self, tmp_path: Path, env) -> None:
        catalog = tmp_path / "catalog.yaml"
        catalog.write_text(_CATALOG, encoding="utf-8")
        result = _run(["patterns-load", str(catalog)], env)
        assert result.exit_code == 0, result.output
        assert "Loaded 1 patterns" in result.output

    def test_patterns_load_missing_file(self, tmp_path: Path, env) -> None:
        result = _run(["patterns-load", str(tmp_path / "nope.yaml")], env)
        assert result.exit_code == 1

    def test_index(self, tmp_path: Path, env) -> None:
        checkout = tmp_path / "checkout"
        checkout.mkdir()
        (checkout / "w.py").write_text("def last(xs):\n    return xs[-1]\n", encoding="utf-8")
        result = _run(["index", "https://github.com/acme/widgets", "-l", "python", "-p", str(checkout)], env)
        assert result.exit_code == 0, result.output
        assert "version=1" in result.output


class TestWorkflow:
    def test_ingest_triage_complete_and_export(self, tmp_path: Path, env, oracle) -> None:
        feed = tmp_path / "feed.yaml"
        feed.write_text(_FEED, encoding="utf-8")

        assert _run(["repo-add", "https://github.com/acme/widgets", "-l", "python"], env).exit_code == 0

        result = _run(["ingest", str(feed)], env, oracle)
        assert result.exit_code == 0, result.output
        assert "enqueued=1" in result.output
        assert "below_minimum=1" in result.output

        result = _run(["queue"], env)
        assert "Triage queue (1 waiting)" in result.output

        result = _run(["triage", "--workers", "1"], env, oracle)
        assert result.exit_code == 0, result.output
        assert "Triage results (1)" in result.output

        (candidate,) = _candidates(tmp_path)
        assert candidate.status is CandidateStatus.IN_PROGRESS

        result = _run(["complete", candidate.id, "--pr", "acme/widgets#101"], env)
        assert result.exit_code == 0, result.output
        assert _candidates(tmp_path)[0].status is CandidateStatus.COMPLETED

        again = _run(["fail", candidate.id, "--reason", "late"], env)
        assert again.exit_code == 1

        assert _run(["verify-chain"], env).exit_code == 0

        out = tmp_path / "audit.json"
        env_with_key = {**env, "BOPS_AUDIT_KEY": "test-key"}
        result = _run(["export-audit", "--output", str(out)], env_with_key)
        assert result.exit_code == 0, result.output
        events = json.loads(out.read_text(encoding="utf-8"))
        assert [e["to_status"] for e in events] == [
            "in_progress", "verified", "fix_generated", "fix_confirmed", "completed",
        ]
        assert (tmp_path / "audit.json.hmac").is_file()

    def test_triage_pool(self, tmp_path: Path, env, oracle) -> None:
        feed = tmp_path / "feed.yaml"
        feed.write_text(_FEED, encoding="utf-8")
        _run(["ingest", str(feed)], env, oracle)
        result = _run(["triage", "--workers", "2"], env, oracle)
        assert result.exit_code == 0, result.output
        assert "Triage results (1)" in result.output

    def test_empty_queue(self, env) -> None:
        result = _run(["triage", "--workers", "1"], env)
        assert "Nothing processed" in result.output

    def test_analyze_commit(self, tmp_path: Path, env, oracle) -> None:
        catalog = tmp_path / "catalog.yaml"
        catalog.write_text(_CATALOG, encoding="utf-8")
        _run(["patterns-load", str(catalog)], env)
        diff = tmp_path / "change.diff"
        diff.write_text('+ log.info("user: " + name);\n', encoding="utf-8")

        result = _run(
            ["analyze-commit", "--repo", "https://github.com/acme/server", "--commit", "abc123def456",
             "--diff", str(diff), "--language", "java", "--file", "src/Main.java"],
            env,
            oracle,
        )
        assert result.exit_code == 0, result.output
        assert oracle.calls(PREFILTER) == 1

        result = _run(["findings", "--status", "human_review"], env)
        assert result.exit_code == 0
        assert "No findings" not in result.output

        conn = open_db(tmp_path / "data" / "bops.db")
        try:
            (finding,) = list_findings(conn)
        finally:
            conn.close()
        assert finding.cve_id == "CVE-2021-44228"
        assert finding.status is FindingStatus.HUMAN_REVIEW


class TestErrors:
    def test_invalid_minimum(self, tmp_path: Path, env) -> None:
        feed = tmp_path / "feed.yaml"
        feed.write_text(_FEED, encoding="utf-8")
        result = _run(["ingest", str(feed), "--minimum", "lots"], env)
        assert result.exit_code == 1

    def test_invalid_status_filter(self, env) -> None:
        assert _run(["candidates", "--status", "bogus"], env).exit_code == 1
        assert _run(["findings", "--status", "bogus"], env).exit_code == 1

    def test_unknown_candidate(self, env) -> None:
        result = _run(["complete", "nope", "--pr", "x#1"], env)
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_tampered_chain_blocks_export(self, tmp_path: Path, env, oracle) -> None:
        feed = tmp_path / "feed.yaml"
        feed.write_text(_FEED, encoding="utf-8")
        _run(["ingest", str(feed)], env, oracle)
        _run(["triage", "--workers", "1"], env, oracle)

        conn = open_db(tmp_path / "data" / "bops.db")
        conn.execute("DROP TRIGGER events_no_update")
        conn.execute("UPDATE events SET notes = 'forged' WHERE seq = 1")
        conn.close()

        assert _run(["verify-chain"], env).exit_code == 1
        assert _run(["export-audit"], env).exit_code == 1
        assert _run(["export-audit", "--no-verify"], env).exit_code == 0
