"""Oracle: the external text-completion service behind every judgement call.

The rest of the system depends only on :class:`Oracle` (``complete(prompt)
-> str``).  :class:`HttpOracle` talks to an OpenAI-compatible
``/chat/completions`` endpoint; :class:`ResilientOracle` wraps any Oracle with
timeout, retry, circuit breaking and pacing.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

import httpx
import structlog

from bops.core.errors import UpstreamError, UpstreamTransient
from bops.core.resilience import CircuitBreaker, Pacer, RetryPolicy, call_with_timeout
from bops.core.settings import Settings

logger = structlog.get_logger()

_TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})

SYSTEM_PROMPT = (
    "You are a careful software security and bug-triage analyst. "
    "Answer with a single JSON value and nothing else."
)


class Oracle(Protocol):
    def complete(self, prompt: str) -> str: ...


class HttpOracle:
    """Synchronous chat-completions client (``httpx``)."""

    source = "oracle"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_s: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.model = model
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )

    def complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        try:
            response = self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            raise UpstreamTransient(self.source, f"timeout ({type(exc).__name__})") from exc
        except httpx.TransportError as exc:
            raise UpstreamTransient(self.source, f"transport error: {exc}") from exc

        if response.status_code in _TRANSIENT_STATUS:
            raise UpstreamTransient(self.source, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise UpstreamError(self.source, f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(self.source, f"unexpected response shape: {exc}") from exc
        return content if isinstance(content, str) else ""

    def close(self) -> None:
        self._client.close()


class ResilientOracle:
    """Timeout + retry + circuit breaker + pacing around another Oracle.

    Order per call: the breaker is consulted once; each attempt waits on the
    pacer and is bounded by *timeout_s*; transient failures are retried per
    *retry*; the final outcome is reported to the breaker.  Attempts run on a
    private pool of *max_concurrency* threads, so waiting for a thread never
    eats into another caller's timeout.
    """

    def __init__(
        self,
        inner: Oracle,
        *,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        pacer: Pacer | None = None,
        timeout_s: float | None = None,
        max_concurrency: int = 8,
    ) -> None:
        self.inner = inner
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker(source="oracle")
        self.pacer = pacer or Pacer()
        self.timeout_s = timeout_s
        self.max_concurrency = max_concurrency
        self._executor = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="bops-oracle")

    def complete(self, prompt: str) -> str:
        return self.breaker.call(lambda: self.retry.run(lambda: self._attempt(prompt), source="oracle"))

    def _attempt(self, prompt: str) -> str:
        self.pacer.wait()
        return call_with_timeout(
            lambda: self.inner.complete(prompt), self.timeout_s, source="oracle", executor=self._executor
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def build_oracle(settings: Settings) -> ResilientOracle:
    """Production Oracle stack from settings.  The API key is read from the env var named in settings."""
    api_key = os.environ.get(settings.oracle_api_key_env, "").strip() or None
    if api_key is None:
        logger.warning("oracle_api_key_missing", env_var=settings.oracle_api_key_env)
    http = HttpOracle(
        base_url=settings.oracle_base_url,
        model=settings.oracle_model,
        api_key=api_key,
        timeout_s=settings.oracle_timeout_s,
    )
    return ResilientOracle(
        http,
        retry=RetryPolicy(
            attempts=settings.retry_attempts,
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
        ),
        breaker=CircuitBreaker(
            failure_threshold=settings.breaker_failure_threshold,
            cooldown_s=settings.breaker_cooldown_s,
            source="oracle",
        ),
        pacer=Pacer(settings.oracle_min_interval_s),
        timeout_s=settings.oracle_timeout_s,
        # each worker can leave one timed-out attempt per retry still running
        max_concurrency=settings.worker_count * settings.retry_attempts + 1,
    )
