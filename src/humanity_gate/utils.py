"""
Utility functions and decorators for the HUMANITY GATE engine.

This module provides logging setup, a timing decorator, identifier
generation and small numeric helpers shared across the pipeline.
"""

import functools
import logging
import sys
import time
import uuid
from typing import Any, Callable, Optional, TypeVar

import structlog

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(
    level: Optional[str] = None, structured: Optional[bool] = None
) -> None:
    """
    Configure structlog on top of the standard logging module.

    Parameters
    ----------
    level : str, optional
        Log level name. Defaults to ``config.LOG_LEVEL``.
    structured : bool, optional
        Render JSON lines when True, human-readable console output when
        False. Defaults to ``config.STRUCTURED_LOGGING``.
    """
    from . import config

    level_name = (level or config.LOG_LEVEL).upper()
    structured = config.STRUCTURED_LOGGING if structured is None else structured
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if structured
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def timer(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Parameters
    ----------
    func : Callable
        Function to be timed.

    Returns
    -------
    Callable
        Wrapped function with timing capability.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(
                "Function execution failed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=(time.perf_counter() - start_time) * 1000,
                error_type=type(e).__name__,
            )
            raise

        logger.debug(
            "Function execution completed",
            function_name=func.__name__,
            module=func.__module__,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
        )

        return result

    return wrapper


def generate_session_id() -> str:
    """
    Generate a unique session identifier.

    Returns
    -------
    str
        32 hexadecimal characters.
    """
    return uuid.uuid4().hex


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Perform safe division with default value for zero denominator.

    Examples
    --------
    >>> safe_divide(10, 2)
    5.0
    >>> safe_divide(10, 0)
    0.0
    """
    if denominator == 0:
        return default
    return numerator / denominator
