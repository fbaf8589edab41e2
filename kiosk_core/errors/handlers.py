# =============================================================================
# kiosk_core/errors/handlers.py
# Error Handling Utilities for the Kiosk Offline Core
# =============================================================================

from __future__ import annotations
import functools
import traceback
from typing import Optional, Callable, TypeVar, Any, Dict

from kiosk_core.logging import get_logger
from .exceptions import KioskCacheError

logger = get_logger(__name__)

T = TypeVar("T")


def failure_result(error: BaseException, message: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the serializable failure dict returned by public operations.

    Args:
        error: The exception that ended the operation
        message: Custom message (uses the error message if None)

    Returns:
        {"success": False, "error": str, "code": str}
    """
    if isinstance(error, KioskCacheError):
        return {
            "success": False,
            "error": message or error.message,
            "code": error.code,
        }
    return {
        "success": False,
        "error": message or str(error),
        "code": "UNKNOWN",
    }


def handle_error(
    error: Exception,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        user_message: Custom message for the result (uses error message if None)

    Returns:
        Failure dict (see failure_result)
    """
    if isinstance(error, KioskCacheError):
        message = user_message or error.message
        code = error.code
        details = error.details
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}

    if log_error:
        logger.error(
            f"[{code}] {message}",
            extra={"details": details},
            exc_info=error,
        )

    return failure_result(error, user_message)


def safe_execute(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    error_message: Optional[str] = None,
    reraise: bool = False,
    **kwargs,
) -> Optional[T]:
    """
    Execute a function with automatic error handling.

    Args:
        func: Function to execute
        *args: Positional arguments to pass to func
        default: Default value to return on error
        error_message: Custom error message to log
        reraise: Whether to reraise the exception after handling
        **kwargs: Keyword arguments to pass to func

    Returns:
        Function result or default value on error

    Usage:
        rows = safe_execute(
            store.get_all,
            "pins",
            default=[],
            error_message="Failed to read cached pins"
        )
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        handle_error(e, user_message=error_message)
        if reraise:
            raise
        return default


class ErrorContext:
    """
    Context manager that logs and captures a failing operation.

    The captured exception is available as ``.error`` after the block.
    Recoverable failures are suppressed so the caller can move on to the
    next independent step; a KioskCacheError marked non-recoverable
    always propagates.

    Usage:
        with ErrorContext("Add column pins.note") as ctx:
            store.execute("ALTER TABLE pins ADD COLUMN note TEXT")
        if ctx.error:
            errors.append(ctx.failure)
    """

    def __init__(self, operation: str, recoverable: bool = True):
        self.operation = operation
        self.recoverable = recoverable
        self.error: Optional[BaseException] = None
        self.failure: Optional[Dict[str, Any]] = None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            logger.debug(f"Completed: {self.operation}")
            return False

        if not isinstance(exc_val, Exception):
            return False

        self.error = exc_val
        if isinstance(exc_val, KioskCacheError):
            self.failure = handle_error(exc_val)
            suppress = self.recoverable and exc_val.recoverable
        else:
            self.failure = handle_error(
                exc_val,
                user_message=f"Error during: {self.operation}: {exc_val}",
            )
            suppress = self.recoverable

        return suppress


def error_boundary(
    default_return: Any = None,
    error_message: Optional[str] = None,
    log: bool = True,
):
    """
    Decorator to wrap functions with error handling.

    Args:
        default_return: Value to return if the function fails. A callable
            is invoked with the exception and its result returned.
        error_message: Custom message for the log line
        log: Whether to log errors

    Usage:
        @error_boundary(default_return=failure_result)
        def audit_database(self) -> Dict[str, Any]:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., Optional[T]]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Optional[T]:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if log:
                    logger.error(
                        f"{error_message or 'Error'} in {func.__name__}: {e}",
                        exc_info=True,
                    )
                if callable(default_return):
                    return default_return(e)
                return default_return

        return wrapper

    return decorator
