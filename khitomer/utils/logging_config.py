"""
Logging configuration using structlog for structured, JSON-based logging.

Every module obtains its logger with ``structlog.get_logger(__name__)`` and
logs snake_case event names with key/value context such as ``ticket_id``,
``run_id`` and ``step``. This module wires the processor pipeline once at
process start.
"""

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_run_context(run_id: str, ticket_id: str) -> None:
    """Bind run identifiers to every log line emitted in the current context.

    ``LocalRuntime`` calls this at the top of each run task so activity
    logs carry the run they belong to without threading the ids through.

    Args:
        run_id: Pipeline run identifier
        ticket_id: Tracker ticket the run implements
    """
    structlog.contextvars.bind_contextvars(run_id=run_id, ticket_id=ticket_id)

