"""structlog setup shared by every waswarm module.

The startup level comes from ``LOG_LEVEL`` because settings load later;
:func:`set_level` applies ``[logging] level`` once they have.
``LOG_FORMAT=json`` swaps the console renderer for one JSON object per line.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _render_processors(fmt: str) -> list[structlog.typing.Processor]:
    if fmt.lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [
        structlog.processors.StackInfoRenderer(),
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ]


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            *_render_processors(os.environ.get("LOG_FORMAT", "console")),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("waswarm")


logger = _setup_logging()


def set_level(level_name: str) -> None:
    """Switch the root level to *level_name*; unknown names fall back to INFO."""
    logging.getLogger().setLevel(getattr(logging, level_name.upper(), logging.INFO))


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    """Log a crash through structlog and exit non-zero. Ctrl-C keeps the default hook."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
