"""bountyops domain exceptions.

Every module raises typed exceptions so callers can handle failures
explicitly instead of catching bare ValueError/RuntimeError.

Only :class:`NotFound` and exhausted :class:`UpstreamError` are meant to
reach a scheduler or the CLI.  Duplicates and below-threshold candidates are
*outcomes*, not errors, and :class:`ParseFailure` is always absorbed into
recorded pipeline state.
"""

from __future__ import annotations


# ── Base ────────────────────────────────────────────────────
class BOPSError(Exception):
    """Root exception for all bountyops errors."""


# ── Repo / filesystem ──────────────────────────────────────
class RepoRootNotFound(BOPSError):
    """Could not locate the repository root (pyproject.toml marker)."""

    def __init__(self, start_path: str | None = None) -> None:
        where = f" (searched from {start_path})" if start_path else ""
        super().__init__(f"Repository root not found{where}: no pyproject.toml in parent chain")
        self.start_path = start_path


# ── Catalog / feed files ───────────────────────────────────
class CatalogNotFound(BOPSError):
    """A catalog or feed YAML file does not exist at the expected path."""


class CatalogInvalid(BOPSError):
    """A catalog or feed file failed schema validation or safe-load."""


class CatalogTooLarge(CatalogInvalid):
    """A catalog or feed file exceeds the allowed size limit."""


# ── State machine ───────────────────────────────────────────
class StateTransitionInvalid(BOPSError):
    """An illegal state transition was attempted."""

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"Invalid transition: {from_status} → {to_status}")
        self.from_status = from_status
        self.to_status = to_status


# ── Lookups ─────────────────────────────────────────────────
class NotFound(BOPSError):
    """A referenced record does not exist in the store."""

    kind = "record"

    def __init__(self, record_id: str) -> None:
        super().__init__(f"{self.kind.capitalize()} not found: {record_id}")
        self.record_id = record_id


class CandidateNotFound(NotFound):
    kind = "candidate"


class FindingNotFound(NotFound):
    kind = "finding"


# ── Upstream calls (Oracle, producers, advisory sources) ───
class UpstreamError(BOPSError):
    """An external dependency failed in a way that is not worth retrying."""

    def __init__(self, source: str, detail: str) -> None:
        super().__init__(f"{source}: {detail}")
        self.source = source
        self.detail = detail


class UpstreamTransient(UpstreamError):
    """Network error, timeout, 5xx or 429 from an upstream (retryable)."""


class UpstreamUnavailable(UpstreamError):
    """Circuit breaker is open for this upstream; the call was not attempted."""

    def __init__(self, source: str, retry_after_s: float) -> None:
        super().__init__(source, f"circuit open, retry in {retry_after_s:.1f}s")
        self.retry_after_s = retry_after_s


# ── Oracle output ───────────────────────────────────────────
class ParseFailure(BOPSError):
    """Oracle output did not contain the expected JSON shape."""


# ── Audit / chain ──────────────────────────────────────────
class AuditChainBroken(BOPSError):
    """Hash-chain integrity verification failed."""
