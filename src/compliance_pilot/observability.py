"""Structured logging for the CompliancePilot controls engine.

All modules obtain their logger via ``get_logger(__name__)`` and log with
keyword arguments::

    logger.info("Control run completed", run_id=str(run_id), passed=True)

``configure_logging`` is called once at application startup. Until then,
structlog's default configuration applies (readable console output), which
is what tests see.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, cast

import structlog

_SENSITIVE_KEY_FRAGMENTS = ("password", "secret", "token", "access_key", "authorization")


def redact_secrets(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Redact credential-like fields before rendering.

    Blob store keys and database URLs pass through settings objects that may
    end up in startup logs.
    """
    for key in list(event_dict.keys()):
        key_norm = key.lower().replace("-", "_")
        if any(fragment in key_norm for fragment in _SENSITIVE_KEY_FRAGMENTS):
            event_dict[key] = "[REDACTED]"
    return event_dict


def configure_logging(debug: bool = False, log_level: str = "INFO") -> None:
    """Install the structlog processor chain and route stdlib logging through it.

    Args:
        debug: Render human-readable console output instead of JSON.
        log_level: Minimum level for stdlib loggers (uvicorn, sqlalchemy).
    """
    base_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        redact_secrets,
    ]

    if debug:
        processors = base_processors + [structlog.dev.ConsoleRenderer()]
        min_level = logging.DEBUG
    else:
        processors = base_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
        min_level = logging.getLevelName(log_level.upper())

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given module name.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        A structlog logger accepting keyword-argument context.
    """
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
