"""
Structured logging configuration
"""

import logging
import sys

import structlog
from structlog.types import EventDict, Processor


def setup_logging(
    service_name: str,
    level: str = "INFO",
    log_format: str = "json",
    environment: str = "development",
) -> structlog.stdlib.BoundLogger:
    """
    Configure structured logging for a process

    Args:
        service_name: Name of the service for log identification
        level: Standard logging level name
        log_format: ``json`` for machine-readable output, anything else for console
        environment: Deployment environment added to every entry

    Returns:
        Configured logger instance
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    def add_service_name(logger, method_name, event_dict: EventDict) -> EventDict:
        event_dict["service"] = service_name
        event_dict["environment"] = environment
        return event_dict

    processors.append(add_service_name)

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger(service_name)
