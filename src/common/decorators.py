"""
Error Handling Decorators

Provides decorators for consistent error handling across snapkg.
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Type, Callable, Any, Optional

from .exceptions import SnapkgError

logger = logging.getLogger(__name__)


def handle_errors(
    *exception_types: Type[Exception],
    default: Any = None,
    log_level: int = logging.DEBUG,
    message: Optional[str] = None,
):
    """
    Decorator for best-effort helpers whose failure must not abort a command.

    Args:
        exception_types: Exception types to catch (default: Exception)
        default: Value to return on error
        log_level: Logging level for caught errors
        message: Custom error message prefix

    Example:
        @handle_errors(OSError, default="")
        def read_description(snapshot):
            ...
    """
    if not exception_types:
        exception_types = (Exception,)

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except exception_types as e:
                prefix = message or f"{func.__name__} failed"
                logger.log(log_level, f"{prefix}: {e}")
                return default
        return wrapper
    return decorator


def require_root(func: Callable) -> Callable:
    """
    Decorator that requires root privileges.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if os.geteuid() != 0:
            raise SnapkgError(
                f"{func.__name__} requires root privileges. Run with sudo.",
                code="PERMISSION_DENIED",
                recoverable=False,
            )
        return func(*args, **kwargs)
    return wrapper


def timed(func: Callable) -> Callable:
    """
    Decorator to log function execution time.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            elapsed = time.perf_counter() - start
            logger.debug(f"{func.__name__} completed in {elapsed:.3f}s")
    return wrapper
