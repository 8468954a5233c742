"""
Error handling decorators and utilities for Parley.

Collaborator soft failures (evidence pipeline, memory writes, artifact
writes, usage logging) must never break the user-visible reply. These
helpers log them consistently and hand back a default instead.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from .exceptions import ParleyError, StreamCancelled

# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., Any])


def soft_fail(step: str, default: Any = None, logger: Optional[logging.Logger] = None):
    """Decorator for best-effort async collaborator calls.

    Wraps a coroutine function so any exception is logged with a stack
    trace and `default` is returned instead. Cancellation is never
    swallowed.

    Args:
        step: Name of the pipeline step for log context
        default: Value returned when the call fails
        logger: Optional logger instance (defaults to a step-specific logger)

    Example:
        >>> @soft_fail("usage", default=None)
        ... async def record_usage(...):
        ...     await store.insert_usage(...)
    """

    def decorator(func: F) -> F:
        log = logger or logging.getLogger(f"parley.{step}")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except (asyncio.CancelledError, StreamCancelled):
                raise
            except ParleyError as e:
                log.warning(f"[{step}] {e.code.value}: {e.message}", exc_info=True)
                return default
            except Exception as e:
                log.warning(f"[{step}] Unexpected error: {e}", exc_info=True)
                return default

        return wrapper  # type: ignore

    return decorator


def log_error(
    logger: logging.Logger, error: BaseException, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error with consistent formatting.

    Args:
        logger: Logger instance to use
        error: The exception to log
        context: Optional context string to prefix the message
        include_traceback: Whether to include the full stack trace

    Example:
        >>> log_error(logger, err, context="Writer")
        # Logs: "[Writer] STORE_WRITE_FAILED: Could not insert memory"
    """
    if isinstance(error, ParleyError):
        message = f"{error.code.value}: {error.message}"
    else:
        message = str(error) or type(error).__name__

    if context:
        message = f"[{context}] {message}"

    logger.error(message, exc_info=(type(error), error, error.__traceback__) if include_traceback else None)


def log_task_failure(logger: logging.Logger, name: str) -> Callable[[asyncio.Task], None]:
    """Build a done-callback that logs a detached task's failure.

    Detached side tasks are never awaited by the response path, so this
    is the only place their exceptions are observed.
    """

    def _callback(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug(f"[{name}] detached task cancelled")
            return
        error = task.exception()
        if error is not None:
            log_error(logger, error, context=name)

    return _callback
