"""Prompt builders for every Oracle call.

Each builder clips its free-text inputs to a bounded excerpt and asks for a
single JSON value whose keys match what the callers read back through
:mod:`bops.analysis.extract`.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from bops.core.guard import clip
from bops.core.models import Candidate, VulnerabilityPattern

# Excerpt limits (characters).
DESCRIPTION_LIMIT = 4_000
DIFF_LIMIT = 12_000
CONTEXT_LIMIT = 8_000
CODE_LIMIT = 6_000

_NA = "N/A"


_GATE_TEMPLATE = """\
Analyze this paid bug-fix opportunity and decide whether it is worth attempting.

We only want SIMPLE, QUICK fixes: a single file, an obvious defect (typo, wrong
variable, missing null check, wrong operator), no proof-of-concept, no new test
suites, no architectural change, clear reproduction steps. If there is ANY
doubt, reject.

Opportunity:
- Issue ID: {issue_id}
- Repository: {repository}
- Repository Language: {language}
- Platform: {platform}
- Amount: {amount}
- Title: {title}
- Description:
{description}

Respond with a JSON object:
{{
  "shouldProcess": true or false,
  "confidence": 0.0-1.0,
  "estimatedTimeMinutes": integer,
  "complexity": "simple" | "moderate" | "complex",
  "reason": "brief, specific explanation"
}}
"""


def gate_prompt(candidate: Candidate, *, language: str | None = None) -> str:
    amount = f"{candidate.amount.amount} {candidate.amount.currency}" if candidate.amount else _NA
    return _GATE_TEMPLATE.format(
        issue_id=candidate.external_issue_id,
        repository=candidate.repository_url or _NA,
        language=language or "unknown",
        platform=candidate.platform.value,
        amount=amount,
        title=candidate.title or _NA,
        description=clip(candidate.description, DESCRIPTION_LIMIT) or _NA,
    )


_ROOT_CAUSE_TEMPLATE = """\
Analyze this bug report and identify its root cause in the codebase.

Repository: {repository}
Language: {language}
Issue: {issue_id}
Title: {title}
Description:
{description}

Codebase structure:
{context}

Respond with a JSON object:
{{
  "rootCause": "what is wrong and why",
  "affectedFiles": ["path/to/file", ...],
  "affectedCode": {{"path/to/file": "the offending code"}},
  "confidence": 0.0-1.0
}}
"""


def root_cause_prompt(
    *,
    repository_url: str,
    language: str | None,
    issue_id: str,
    title: str | None,
    description: str | None,
    context: str,
) -> str:
    return _ROOT_CAUSE_TEMPLATE.format(
        repository=repository_url,
        language=language or "unknown",
        issue_id=issue_id,
        title=title or _NA,
        description=clip(description, DESCRIPTION_LIMIT) or _NA,
        context=clip(context, CONTEXT_LIMIT) or "(not available)",
    )


_PRESENCE_TEMPLATE = """\
Determine whether this specific vulnerability is present in the commit.

CVE: {cve_id}
Summary: {summary}
Vulnerable pattern:
{vulnerable}
Fixed pattern:
{fixed}

Repository: {repository}
Language: {language}
Commit: {commit_id}
Diff:
{diff}

Codebase structure:
{context}

Respond with a JSON object:
{{
  "present": true or false,
  "confidence": 0.0-1.0,
  "vulnerableCode": "the specific vulnerable code",
  "affectedFiles": ["path/to/file", ...],
  "notes": "analysis notes"
}}
"""


def presence_prompt(
    *,
    repository_url: str,
    language: str | None,
    commit_id: str,
    diff: str | None,
    pattern: VulnerabilityPattern,
    context: str,
) -> str:
    return _PRESENCE_TEMPLATE.format(
        cve_id=pattern.cve_id,
        summary=pattern.summary,
        vulnerable=pattern.vulnerable_pattern or _NA,
        fixed=pattern.fixed_pattern or _NA,
        repository=repository_url,
        language=language or pattern.language,
        commit_id=commit_id,
        diff=clip(diff, DIFF_LIMIT) or "(empty)",
        context=clip(context, CONTEXT_LIMIT) or "(not available)",
    )


_FIX_TEMPLATE = """\
Write a minimal fix for the problem below.

{subject}

Analysis so far:
{analysis}

Affected code:
{affected}

Codebase structure:
{context}

Respond with a JSON object:
{{
  "fixCode": "the corrected code (complete replacement for the affected code)",
  "notes": "what the fix changes"
}}
"""


def fix_prompt(*, subject: str, analysis: str | None, affected_code: Mapping[str, str], context: str) -> str:
    return _FIX_TEMPLATE.format(
        subject=subject,
        analysis=clip(analysis, DESCRIPTION_LIMIT) or _NA,
        affected=clip(_render_code(affected_code), CODE_LIMIT) or _NA,
        context=clip(context, CONTEXT_LIMIT) or "(not available)",
    )


_VERIFY_TEMPLATE = """\
Review whether the proposed fix correctly resolves the problem without
introducing new defects.

{subject}

Original code:
{affected}

Proposed fix:
{fix}

Respond with a JSON object:
{{
  "correct": true or false,
  "confidence": 0.0-1.0,
  "notes": "review notes",
  "suggestions": "improvements, if any"
}}
"""


def verify_fix_prompt(*, subject: str, affected_code: Mapping[str, str], fix: str) -> str:
    return _VERIFY_TEMPLATE.format(
        subject=subject,
        affected=clip(_render_code(affected_code), CODE_LIMIT) or _NA,
        fix=clip(fix, CODE_LIMIT),
    )


def issue_subject_text(issue_id: str, title: str | None, description: str | None) -> str:
    return (
        f"Bug report {issue_id}: {title or _NA}\n"
        f"{clip(description, DESCRIPTION_LIMIT) or ''}"
    ).rstrip()


def commit_subject_text(commit_id: str, pattern: VulnerabilityPattern, diff: str | None) -> str:
    return (
        f"Vulnerability {pattern.cve_id} ({pattern.summary}) introduced by commit {commit_id}.\n"
        f"Fixed pattern for reference:\n{pattern.fixed_pattern or _NA}\n"
        f"Diff:\n{clip(diff, DIFF_LIMIT)}"
    )


_PREFILTER_TEMPLATE = """\
Analyze this commit diff and determine which of the listed vulnerabilities
(if any) it could introduce.

Language: {language}

Diff:
{diff}

Affected files:
{files}

Codebase structure:
{context}

Candidate vulnerabilities:
{patterns}

Respond with a JSON array of the matching CVE ids, e.g. ["CVE-2024-1234"].
If none match, respond with [].
"""


def prefilter_prompt(
    *,
    language: str,
    diff: str,
    affected_files: Sequence[str],
    patterns: Iterable[VulnerabilityPattern],
    context: str,
) -> str:
    lines = []
    for p in patterns:
        line = f"- {p.cve_id}: {p.summary}"
        if p.vulnerable_pattern:
            line += f"\n  vulnerable pattern: {clip(p.vulnerable_pattern, 400)}"
        lines.append(line)
    return _PREFILTER_TEMPLATE.format(
        language=language,
        diff=clip(diff, DIFF_LIMIT) or "(empty)",
        files="\n".join(affected_files) or "(none listed)",
        context=clip(context, CONTEXT_LIMIT) or "(not available)",
        patterns="\n".join(lines),
    )


def _render_code(code: Mapping[str, str]) -> str:
    return "\n".join(f"=== {path} ===\n{snippet}" for path, snippet in code.items())
