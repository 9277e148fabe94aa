"""Filtering gate: decide whether a candidate is worth automated remediation.

Cheap local checks run first (repository language, amount ceiling); only a
candidate that passes them costs an Oracle call.  The Oracle's judgement is
then held against the caller's thresholds.

The gate fails closed: any exception, timeout or unparseable reply yields a
rejecting :class:`Verdict` whose ``reason`` names the cause.  It never
writes to the store.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

import structlog

from bops.analysis.extract import extract_object, read_bool, read_float, read_int, read_str
from bops.analysis.oracle import Oracle
from bops.analysis.prompts import gate_prompt
from bops.core.models import Candidate

logger = structlog.get_logger()

COMPLEXITY_RANK = {"simple": 0, "moderate": 1, "complex": 2}

_LANGUAGE_ALIASES = {"js": "javascript", "jsx": "javascript", "tsx": "typescript", "ts": "typescript", "py": "python"}


@dataclass(frozen=True)
class Verdict:
    admit: bool
    should_process: bool
    confidence: float
    estimated_time_minutes: int
    complexity: str | None
    reason: str

    @classmethod
    def reject(cls, reason: str, *, confidence: float = 0.0, minutes: int = 0) -> "Verdict":
        return cls(
            admit=False,
            should_process=False,
            confidence=confidence,
            estimated_time_minutes=minutes,
            complexity=None,
            reason=reason,
        )


class FilteringGate:
    def __init__(
        self,
        oracle: Oracle,
        *,
        max_amount: Decimal | None = None,
        max_complexity: str | None = None,
        supported_languages: Iterable[str] | None = None,
    ) -> None:
        if max_complexity is not None and max_complexity not in COMPLEXITY_RANK:
            raise ValueError(f"max_complexity must be one of {sorted(COMPLEXITY_RANK)}: {max_complexity!r}")
        self.oracle = oracle
        self.max_amount = max_amount
        self.max_complexity = max_complexity
        self.supported_languages = (
            frozenset(_normalise_language(lang) for lang in supported_languages)
            if supported_languages is not None
            else None
        )

    def decide(
        self,
        candidate: Candidate,
        confidence_threshold: float = 0.0,
        max_estimated_minutes: int | None = None,
        *,
        language: str | None = None,
    ) -> Verdict:
        """Judge *candidate*.

        ``admit`` is true only when the Oracle says to process it, its
        confidence is at least *confidence_threshold*, its time estimate is
        within *max_estimated_minutes* (unbounded when ``None``) and, if a
        complexity ceiling is configured, its complexity is within it.
        """
        rejected = self._precheck(candidate, language)
        if rejected is not None:
            logger.info("gate_prechecked_reject", candidate_id=candidate.id, reason=rejected.reason)
            return rejected

        try:
            data = extract_object(self.oracle.complete(gate_prompt(candidate, language=language)))
        except Exception as exc:  # fail closed
            logger.warning("gate_oracle_failed", candidate_id=candidate.id, error=str(exc))
            return Verdict.reject(f"gate error: {type(exc).__name__}: {exc}")

        should_process = read_bool(data, "shouldProcess")
        confidence = read_float(data, "confidence")
        minutes = max(read_int(data, "estimatedTimeMinutes"), 0)
        complexity = read_str(data, "complexity").strip().lower() or None
        reason = read_str(data, "reason").strip() or "no reason given"

        problems: list[str] = []
        if not should_process:
            problems.append("oracle advised against processing")
        if confidence < confidence_threshold:
            problems.append(f"confidence {confidence:.2f} below {confidence_threshold:.2f}")
        if max_estimated_minutes is not None and minutes > max_estimated_minutes:
            problems.append(f"estimate {minutes}min exceeds {max_estimated_minutes}min")
        if self.max_complexity is not None and complexity is not None:
            if COMPLEXITY_RANK.get(complexity, len(COMPLEXITY_RANK)) > COMPLEXITY_RANK[self.max_complexity]:
                problems.append(f"complexity {complexity} exceeds {self.max_complexity}")

        admit = not problems
        verdict = Verdict(
            admit=admit,
            should_process=should_process,
            confidence=confidence,
            estimated_time_minutes=minutes,
            complexity=complexity,
            reason=reason if admit else f"{reason} ({'; '.join(problems)})",
        )
        logger.info(
            "gate_decided",
            candidate_id=candidate.id,
            admit=admit,
            confidence=confidence,
            estimated_time_minutes=minutes,
            complexity=complexity,
        )
        return verdict

    def _precheck(self, candidate: Candidate, language: str | None) -> Verdict | None:
        if self.supported_languages is not None and language:
            if _normalise_language(language) not in self.supported_languages:
                supported = ", ".join(sorted(self.supported_languages))
                return Verdict.reject(f"language {language!r} not supported (supported: {supported})")
        if self.max_amount is not None and candidate.amount is not None:
            if candidate.amount.amount > self.max_amount:
                return Verdict.reject(f"amount {candidate.amount.amount} exceeds maximum {self.max_amount}")
        return None


def _normalise_language(language: str) -> str:
    lowered = language.strip().lower()
    return _LANGUAGE_ALIASES.get(lowered, lowered)
