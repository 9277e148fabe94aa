"""Shared fixtures: a fresh database per test and scripted Oracles (no network)."""

from __future__ import annotations

import json
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

import pytest

from bops.core.db import open_db
from bops.core.models import Candidate, Money, Platform

# First line of each prompt template, used to route scripted replies.
GATE = "Analyze this paid bug-fix opportunity"
ROOT_CAUSE = "Analyze this bug report"
PRESENCE = "Determine whether this specific vulnerability"
FIX = "Write a minimal fix"
FIX_REVIEW = "Review whether the proposed fix"
PREFILTER = "Analyze this commit diff"


class ScriptedOracle:
    """Replies by prompt kind.

    Each route maps to a string, a dict/list (JSON-encoded on the way out),
    an exception instance (raised), or a list of those consumed in order.
    """

    def __init__(self, routes: dict[str, Any] | None = None) -> None:
        self.routes = dict(routes or {})
        self.prompts: list[str] = []
        self._lock = threading.Lock()

    def complete(self, prompt: str) -> str:
        with self._lock:
            self.prompts.append(prompt)
            for prefix, reply in self.routes.items():
                if prompt.startswith(prefix):
                    if isinstance(reply, list) and reply and not isinstance(reply[0], str):
                        reply = reply.pop(0) if len(reply) > 1 else reply[0]
                    break
            else:
                raise AssertionError(f"unexpected prompt: {prompt[:60]!r}")
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, (dict, list)):
            return json.dumps(reply)
        return reply

    def calls(self, prefix: str) -> int:
        return sum(1 for p in self.prompts if p.startswith(prefix))


@pytest.fixture()
def conn(tmp_path: Path):
    c = open_db(tmp_path / "bops_test.db")
    yield c
    c.close()


@pytest.fixture()
def make_candidate() -> Callable[..., Candidate]:
    def _make(
        external_issue_id: str = "42",
        amount: str | None = "200.00",
        platform: Platform = Platform.ALGORA,
        repository_url: str = "https://github.com/acme/widgets",
        **kwargs: Any,
    ) -> Candidate:
        return Candidate(
            external_issue_id=external_issue_id,
            platform=platform,
            repository_url=repository_url,
            amount=Money(Decimal(amount)) if amount is not None else None,
            title=kwargs.pop("title", f"Bug {external_issue_id}"),
            description=kwargs.pop("description", "Crash when the list is empty."),
            **kwargs,
        )

    return _make


def admit_reply(confidence: float = 0.9, minutes: int = 20, complexity: str = "simple") -> dict[str, Any]:
    return {
        "shouldProcess": True,
        "confidence": confidence,
        "estimatedTimeMinutes": minutes,
        "complexity": complexity,
        "reason": "one-line null check",
    }
