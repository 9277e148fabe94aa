"""Structured logging for bountyops (structlog).

Configured once at process start; every module then does::

    import structlog
    logger = structlog.get_logger()
    logger.info("candidate_enqueued", candidate_id=cid, score=200.0)

JSON lines by default (``BOPS_LOG_JSON=true``), console renderer for
development (``BOPS_LOG_JSON=false``).

Oracle prompts and upstream error bodies can echo credentials back, so a
redaction processor runs on every event before rendering.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping, MutableMapping
from typing import Any

import structlog

from bops.core.guard import redact_secrets

# Keys whose values never appear in logs, even redacted.
_SUPPRESSED_KEYS = frozenset({"api_key", "key", "secret", "password", "token", "authorization"})


def _secret_redaction_processor(
    _logger: Any,
    _method: str,
    event_dict: MutableMapping[str, Any],
) -> Mapping[str, Any]:
    for k, v in event_dict.items():
        if k.lower() in _SUPPRESSED_KEYS:
            event_dict[k] = "[SUPPRESSED]"
        elif isinstance(v, str):
            event_dict[k] = redact_secrets(v)
    return event_dict


def configure_logging(*, level: str = "INFO", json_output: bool = True) -> None:
    """Set up structlog + stdlib integration.

    Parameters
    ----------
    level:
        Root log level (``DEBUG``, ``INFO``, ``WARNING``, etc.).
    json_output:
        If *True*, render as JSON lines.  If *False*, use console output.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _secret_redaction_processor,
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
