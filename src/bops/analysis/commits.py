"""Commit-triggered vulnerability analysis.

A commit diff is first screened against the whole pattern catalog for its
language in a single Oracle call (the pre-filter).  Only the CVE ids that
call returns get the expensive per-pattern treatment: a finding each, driven
through :class:`~bops.analysis.pipeline.StagedVerifier` with presence scoring
in place of root-cause scoring.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence

import structlog

from bops.analysis import prompts
from bops.analysis.context import CodebaseContextProvider
from bops.analysis.extract import extract_array
from bops.analysis.oracle import Oracle
from bops.analysis.pipeline import StagedVerifier
from bops.analysis.recorder import FindingRecorder
from bops.core.guard import validate_external_id, validate_url
from bops.core.models import Finding, FindingOrigin, VulnerabilityPattern
from bops.core.repository import list_patterns

logger = structlog.get_logger()


class CommitAnalyzer:
    def __init__(
        self,
        conn: sqlite3.Connection,
        oracle: Oracle,
        context_provider: CodebaseContextProvider,
        verifier: StagedVerifier,
    ) -> None:
        self.conn = conn
        self.oracle = oracle
        self.context_provider = context_provider
        self.verifier = verifier

    def analyze(
        self,
        repository_url: str,
        commit_id: str,
        diff: str,
        affected_files: Sequence[str],
        language: str,
    ) -> list[Finding]:
        """Screen *diff* against the catalog and verify every matching pattern.

        Returns the final state of each finding created (possibly empty).
        """
        repository_url = validate_url(repository_url)
        commit_id = validate_external_id(commit_id, field_name="commit_id")

        patterns = list_patterns(self.conn, language)
        if not patterns:
            logger.info("commit_skipped_no_patterns", commit_id=commit_id, language=language)
            return []

        try:
            context = self.context_provider.get(repository_url, language)
        except Exception as exc:
            logger.warning("context_unavailable", repository_url=repository_url, error=str(exc))
            context = ""

        selected = self.prefilter(
            language=language,
            diff=diff,
            affected_files=affected_files,
            patterns=patterns,
            context=context,
        )
        logger.info(
            "commit_prefiltered",
            commit_id=commit_id,
            catalog_size=len(patterns),
            selected=len(selected),
        )

        recorder = FindingRecorder(self.conn)
        results: list[Finding] = []
        for pattern in selected:
            finding = Finding(
                origin=FindingOrigin.COMMIT,
                repository_url=repository_url,
                subject_id=commit_id,
                cve_id=pattern.cve_id,
                language=language,
                title=f"{pattern.cve_id} in commit {commit_id[:12]}",
                description=pattern.summary,
                commit_diff=diff,
                affected_files=tuple(affected_files),
            )
            results.append(self.verifier.run(finding, pattern, on_transition=recorder))
        return results

    def prefilter(
        self,
        *,
        language: str,
        diff: str,
        affected_files: Sequence[str],
        patterns: Sequence[VulnerabilityPattern],
        context: str,
    ) -> list[VulnerabilityPattern]:
        """Ask the Oracle which catalog entries plausibly apply.

        Unknown ids and duplicates are dropped; any failure yields ``[]``.
        """
        prompt = prompts.prefilter_prompt(
            language=language,
            diff=diff,
            affected_files=affected_files,
            patterns=patterns,
            context=context,
        )
        try:
            raw = extract_array(self.oracle.complete(prompt))
        except Exception as exc:  # a failed screen means nothing is analysed
            logger.warning("prefilter_failed", error=str(exc))
            return []

        catalog = {p.cve_id: p for p in patterns}
        selected: dict[str, VulnerabilityPattern] = {}
        for item in raw:
            if not isinstance(item, str):
                continue
            cve_id = item.strip().upper()
            if cve_id in catalog:
                selected.setdefault(cve_id, catalog[cve_id])
            else:
                logger.info("prefilter_unknown_id_dropped", cve_id=cve_id)
        return list(selected.values())
