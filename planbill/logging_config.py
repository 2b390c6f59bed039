"""structlog configuration module."""

import logging
import sys

import structlog


def setup_logging(debug: bool = False, *, stream=None) -> None:
    """
    Configure structlog and stdlib logging for the API and the bootstrap CLI.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output for log aggregation.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
        stream: Output stream, defaults to stdout. The CLI passes stderr so
            its own messages stay readable.
    """
    stream = stream or sys.stdout
    level = logging.DEBUG if debug else logging.INFO

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, path (from middleware)
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    # The Stripe SDK logs through stdlib logging; keep its output in the same stream.
    logging.basicConfig(format="%(message)s", stream=stream, level=level)
    logging.getLogger("stripe").setLevel(logging.DEBUG if debug else logging.WARNING)
