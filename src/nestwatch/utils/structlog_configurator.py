"""Structlog-based logging configuration for nestwatch.

Library modules keep using ``logging.getLogger(__name__)``; this module routes
the standard library root logger through structlog's renderers so daemon,
CLI and web output share one format.

Supports different deployment targets:
- Docker: JSON on stderr
- Development: human-readable console output (``NESTWATCH_ENV=development``)
"""

import logging
import os
import sys
from collections.abc import Callable
from typing import Any

import structlog

from nestwatch import __version__
from nestwatch.config.models import NestwatchConfig


def is_docker_environment() -> bool:
    """Check if running in a Docker container."""
    return os.path.exists("/.dockerenv") or os.environ.get("DOCKER_CONTAINER") == "true"


def is_development_environment() -> bool:
    """Check if NESTWATCH_ENV marks this as a development run."""
    return os.environ.get("NESTWATCH_ENV", "production") == "development"


def get_deployment_environment() -> str:
    """Get deployment environment with 'unknown' fallback."""
    if is_docker_environment():
        return "docker"
    elif is_development_environment():
        return "development"
    else:
        return "unknown"


def _add_static_context(extra_fields: dict[str, str]) -> Callable:
    """Processor to add static context fields to all log entries."""

    def processor(
        logger: structlog.BoundLogger, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.update(extra_fields)
        return event_dict

    return processor


def _use_json(config: NestwatchConfig) -> bool:
    use_json = config.logging.json_logs
    if use_json is None:
        # Auto-detect: JSON in containers, human-readable everywhere else
        use_json = is_docker_environment() and not is_development_environment()
    if is_development_environment():
        if os.environ.get("NESTWATCH_JSON_LOGS", "false").lower() == "true":
            use_json = True
    return use_json


def _shared_processors(config: NestwatchConfig) -> list:
    """Processors applied to both structlog and standard library records."""
    extra_fields = {
        "service": "nestwatch",
        "version": __version__,
        "deployment": get_deployment_environment(),
        **config.logging.extra_fields,
    }

    processors = [
        structlog.contextvars.merge_contextvars,
        _add_static_context(extra_fields),
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
    ]

    if config.logging.include_caller:
        processors.append(structlog.processors.CallsiteParameterAdder())

    return processors


def configure_structlog(config: NestwatchConfig, debug: bool = False) -> None:
    """Configure structlog-based logging system.

    Args:
        config: The NestwatchConfig instance containing logging settings.
        debug: Force DEBUG level regardless of the configured level.
    """
    level_name = "DEBUG" if debug else config.logging.level.upper()
    log_level = getattr(logging, level_name, logging.INFO)

    shared_processors = _shared_processors(config)
    renderer = (
        structlog.processors.JSONRenderer()
        if _use_json(config)
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Standard library records (logging.getLogger(__name__)) go through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logger = structlog.get_logger(__name__)
    logger.info(
        "Structured logging configured",
        version=__version__,
        log_level=level_name,
        environment=get_deployment_environment(),
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)
