"""
Structured logging configuration using structlog.

Events are snake_case names with key-value context. Every event carries the
operator name, version and watched namespace; events emitted during a
reconciliation pass also carry the deployment being reconciled (see
``deployment_context``).
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor

from arango_operator.config.settings import settings


def add_operator_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add operator identity to log events."""
    event_dict.setdefault("app", settings.app_name)
    event_dict.setdefault("version", settings.app_version)
    event_dict.setdefault("watch_namespace", settings.watch_namespace)
    return event_dict


def add_severity_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add severity level for Google Cloud Logging compatibility."""
    if "level" in event_dict:
        event_dict["severity"] = event_dict["level"].upper()
    return event_dict


def _renderer() -> Processor:
    log_format = settings.log_format or ("json" if settings.is_production else "console")
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging() -> None:
    """Configure structlog and the stdlib logging bridge for the operator."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_operator_context,
        add_severity_level,
        structlog.processors.format_exc_info,
        _renderer(),
    ]

    structlog.configure(
        processors=processors,  # type: ignore
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    # The watch stream and the health client log every request at INFO
    logging.getLogger("kubernetes_asyncio").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@contextmanager
def deployment_context(name: str, namespace: str) -> Iterator[None]:
    """
    Attach the deployment to every event logged inside the block.

    Context variables are copied per asyncio task, so concurrent passes for
    different deployments do not see each other's context.
    """
    with structlog.contextvars.bound_contextvars(deployment=name, namespace=namespace):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured structlog logger.

    Args:
        name: Logger name (typically __name__ of the module)
    """
    return structlog.get_logger(name)
