import logging

import structlog

QUIET_LOGGERS = ("httpx", "httpcore")

# structlog renders its own timestamp and level for loggers under this name
STRUCTLOG_NAMESPACE = "csvgov.connector.engine"


class ConsoleFormatter(logging.Formatter):
    """Plain messages for structlog output, the usual prefix for everything else."""

    def format(self, record: logging.LogRecord) -> str:
        if record.name == STRUCTLOG_NAMESPACE or record.name.startswith(STRUCTLOG_NAMESPACE + "."):
            return record.getMessage()
        return super().format(record)


def resolve_level(log_level: str | int) -> int:
    # Accept both standard level names (e.g. "INFO") and numeric values.
    if isinstance(log_level, int):
        return log_level
    raw = str(log_level).upper()
    level = getattr(logging, raw, None)
    if not isinstance(level, int):
        try:
            level = int(log_level)
        except ValueError:
            level = logging.INFO
    return level


def configure_logging(log_level: str | int = "INFO", *, json_format: bool = False) -> None:
    """Configure stdlib logging and the structlog pipeline used by the engine."""
    level = resolve_level(log_level)

    handler = logging.StreamHandler()
    handler.setFormatter(
        ConsoleFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")
    )
    logging.basicConfig(level=level, handlers=[handler])
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
