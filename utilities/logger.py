"""
Structured logging for the ReadingBud service using structlog.
Provides JSON or console output and a cascade-aware logger.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    debug: bool = False
) -> None:
    """
    Set up structured logging with configurable output formats.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        log_file: Optional log file path
        debug: Add call-site information to every event
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if debug:
        processors.append(structlog.processors.CallsiteParameterAdder())

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        logging.getLogger().addHandler(file_handler)

    logger = structlog.get_logger(__name__)
    logger.info(
        "Logging system initialized",
        level=log_level,
        format=log_format,
        file=str(log_file) if log_file else None,
        debug=debug
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class CascadeLogger:
    """
    Logger for multi-step cascades.

    Every event carries the entity being removed and who triggered the
    removal, so a cascade that stopped half way can be reconstructed.
    """

    def __init__(self, entity: str, entity_id: str, name: str = "cascade"):
        self.logger = get_logger(name)
        self.context = {"entity": entity, "entity_id": entity_id}

    def bind_context(self, **kwargs) -> 'CascadeLogger':
        """Bind additional context variables to every cascade event."""
        self.context.update(kwargs)
        return self

    def log_start(self) -> None:
        self.logger.info("Cascade started", **self.context)

    def log_step(self, step: str, touched: Optional[int] = None) -> None:
        self.logger.debug("Cascade step completed", step=step, touched=touched, **self.context)

    def log_step_failed(self, step: str, error: str, completed_steps: int) -> None:
        """Log a failed step; completed steps stay applied."""
        self.logger.error(
            "Cascade step failed",
            step=step,
            error=error,
            completed_steps=completed_steps,
            **self.context
        )

    def log_complete(self, steps: int, touched: int) -> None:
        self.logger.info("Cascade completed", steps=steps, touched=touched, **self.context)
