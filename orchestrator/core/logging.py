"""structlog setup for workers, the watcher and the event consumer.

Every process calls ``configure_logging()`` once at start-up. Services then
log through ``structlog.get_logger(__name__)`` with snake_case event names;
``document_id`` and ``tenant_id`` are bound as context variables while a
document is being processed or aggregated, so they appear on every entry.
"""

import logging
import sys

import structlog

from orchestrator.core.config import Settings, get_settings

# Chatty transports used by supabase-py and redis
_QUIET_LOGGERS = ("httpx", "httpcore", "hpack")


def resolve_log_level(settings: Settings) -> int:
    """Level from LOG_LEVEL, else DEBUG in debug mode and INFO otherwise."""
    if settings.log_level:
        level = logging.getLevelName(settings.log_level.upper())
        if isinstance(level, int):
            return level
    return logging.DEBUG if settings.debug else logging.INFO


def build_processors(json_output: bool) -> list[structlog.types.Processor]:
    """Processor chain ending in a JSON or console renderer."""
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(settings: Settings | None = None) -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        settings: Defaults to ``get_settings()``.
    """
    settings = settings or get_settings()
    level = resolve_log_level(settings)
    json_output = (not settings.debug) if settings.log_json is None else settings.log_json

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
