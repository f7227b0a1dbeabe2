"""structlog configuration and component-scoped logging context.

Provides run ID generation, a context manager that binds indexer
component metadata, and structured log configuration for console and
JSON output with optional file logging.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


def generate_run_id() -> str:
    """Generate a unique identifier for one indexer process run."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# structlog configuration
# ---------------------------------------------------------------------------


_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | Path | None = None,
    run_id: str | None = None,
) -> None:
    """Configure structlog for the application.

    Sets up structlog with shared processors and a format-specific
    renderer. Configures the stdlib logging root to respect the given
    level and optionally adds a file handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Output format: ``"console"`` for human-readable or
            ``"json"`` for machine-parseable.
        log_file: Optional file path for log output (in addition to stderr).
        run_id: Optional run ID to bind to all log entries.

    Raises:
        ValueError: If ``level`` is not a recognized log level.
    """
    level_upper = level.upper()
    if level_upper not in _VALID_LEVELS:
        msg = f"Invalid log level: {level!r}. Must be one of {sorted(_VALID_LEVELS)}"
        raise ValueError(msg)

    numeric_level = getattr(logging, level_upper)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates on re-configuration
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(numeric_level)
    root_logger.addHandler(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(numeric_level)
        root_logger.addHandler(file_handler)

    # web3 and httpx are chatty at INFO.
    for noisy in ("httpx", "web3", "urllib3"):
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)

    if run_id:
        structlog.contextvars.bind_contextvars(run_id=run_id)


# ---------------------------------------------------------------------------
# Component logging context manager
# ---------------------------------------------------------------------------


@contextmanager
def indexer_context(
    component: str,
    **extra: Any,
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind component-level metadata to structlog for a block of work.

    Logs start and end of the block and binds the component name (and
    any extra keys) to all log entries emitted inside it.

    Args:
        component: Name of the indexer component (e.g. ``"sync"``).
        **extra: Additional key-value pairs to bind.

    Yields:
        A bound structlog logger with component context.

    Example::

        with indexer_context("sync", from_block=0) as log:
            log.info("window_processed", to_block=9_999)
    """
    structlog.contextvars.bind_contextvars(component=component, **extra)

    log: structlog.stdlib.BoundLogger = structlog.get_logger(component)
    log.debug("component_start", component=component)

    try:
        yield log
    except Exception:
        log.exception("component_error", component=component)
        raise
    finally:
        log.debug("component_end", component=component)
        structlog.contextvars.unbind_contextvars("component", *extra.keys())
