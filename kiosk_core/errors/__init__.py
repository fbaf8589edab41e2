# =============================================================================
# kiosk_core/errors/__init__.py
# Centralized Error Handling for the Kiosk Offline Core
# =============================================================================

from .exceptions import (
    KioskCacheError,
    LocalStoreError,
    LocalWriteError,
    UnknownTableError,
    SchemaRepairError,
    RemoteFetchError,
    RemoteTimeoutError,
    TileFetchError,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    failure_result,
    safe_execute,
    ErrorContext,
    error_boundary,
)

__all__ = [
    # Exceptions
    "KioskCacheError",
    "LocalStoreError",
    "LocalWriteError",
    "UnknownTableError",
    "SchemaRepairError",
    "RemoteFetchError",
    "RemoteTimeoutError",
    "TileFetchError",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "failure_result",
    "safe_execute",
    "ErrorContext",
    "error_boundary",
]
