"""structlog configuration and run-level logging context.

Routes structlog to stderr (console or JSON) and an optional JSON-lines
audit file, with a processor that redacts credential-like values
from every event, and a context manager binding run metadata.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from recurly_rescue.sanitize import sanitize_error_message

if TYPE_CHECKING:
    from collections.abc import Iterator, MutableMapping

# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_SENSITIVE_KEYS = frozenset({"api_key", "authorization", "password", "secret", "token"})


def redact_secrets(
    logger: Any,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor that scrubs secrets from event values.

    Keys that name a credential are replaced outright; string values are
    passed through :func:`sanitize_error_message`.
    """
    for key, value in list(event_dict.items()):
        if key.lower() in _SENSITIVE_KEYS:
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, str) and key != "event" and value:
            event_dict[key] = sanitize_error_message(value)
    return event_dict


# ---------------------------------------------------------------------------
# structlog configuration
# ---------------------------------------------------------------------------

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Loggers that report every HTTP request line at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore")

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    redact_secrets,
]


def _resolve_level(level: str) -> int:
    name = level.upper()
    if name not in LOG_LEVELS:
        msg = f"Invalid log level: {level!r}. Must be one of {list(LOG_LEVELS)}"
        raise ValueError(msg)
    return logging.getLevelNamesMapping()[name]


def _formatter(renderer: structlog.types.Processor) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | Path | None = None,
) -> None:
    """Route structlog through stdlib logging to stderr and an optional audit file.

    Stderr uses ``fmt``; the audit file always receives JSON lines.
    Calling this again closes and replaces the previous handlers.

    Args:
        level: Log level name, case-insensitive.
        fmt: ``"console"`` or ``"json"`` for the stderr handler.
        log_file: Audit log path; parent directories are created.

    Raises:
        ValueError: If ``level`` is not a recognized log level.
    """
    numeric_level = _resolve_level(level)

    stderr_renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_formatter(stderr_renderer))
    handlers: list[logging.Handler] = [stderr_handler]

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    for old in root_logger.handlers[:]:
        root_logger.removeHandler(old)
        old.close()
    root_logger.setLevel(numeric_level)
    for handler in handlers:
        handler.setLevel(numeric_level)
        root_logger.addHandler(handler)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


# ---------------------------------------------------------------------------
# Run logging context manager
# ---------------------------------------------------------------------------


@contextmanager
def run_logging_context(
    project: str,
    environment: str,
    dry_run: bool = False,
    **extra: Any,
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind run-level metadata to every log entry inside the context.

    Logs run start and end, and logs (then re-raises) any exception that
    escapes the block.

    Args:
        project: Project identifier (e.g. ``"eur"``).
        environment: ``"sandbox"`` or ``"production"``.
        dry_run: Whether write operations are simulated.
        **extra: Additional key-value pairs to bind.

    Yields:
        A bound structlog logger with run context.

    Example::

        with run_logging_context("eur", "sandbox") as log:
            log.info("discovery_started")
    """
    structlog.contextvars.bind_contextvars(
        project=project,
        environment=environment,
        dry_run=dry_run,
        **extra,
    )

    log: structlog.stdlib.BoundLogger = structlog.get_logger("recurly_rescue.run")
    log.info("run_start")

    try:
        yield log
    except Exception:
        log.exception("run_error")
        raise
    finally:
        log.info("run_end")
        structlog.contextvars.unbind_contextvars(
            "project", "environment", "dry_run", *extra.keys()
        )
