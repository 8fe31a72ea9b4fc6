"""
structlog setup for the producer and its CLI.

Log lines from a producer's owner task carry `queue` and `producer_index`
so output from several producers in one process can be told apart.
"""

import logging
import sys

import structlog
from structlog.types import Processor

from rabbitmq_producer.config.settings import get_settings

# aiormq reports every dropped socket at INFO/ERROR; the producer logs its own
# reconnects, so the library noise is cut down to warnings.
_QUIET_LOGGERS = ("aiormq", "aio_pika", "asyncio")


def _renderer(json_logs: bool) -> list[Processor]:
    if json_logs:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (LOG_LEVEL setting if None)
        json_logs: Render JSON lines (default: only in production)
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    if json_logs is None:
        json_logs = settings.is_production

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        *_renderer(json_logs),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, getattr(logging, level)))


def bind_producer_context(queue: str, producer_index: int) -> None:
    """
    Tag subsequent log lines of the current task with the producer identity.

    Called from inside the producer's owner task, whose context is a copy,
    so the binding never leaks into the caller.
    """
    structlog.contextvars.bind_contextvars(queue=queue, producer_index=producer_index)
