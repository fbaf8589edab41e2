# =============================================================================
# kiosk_core/errors/exceptions.py
# Custom Exception Hierarchy for the Kiosk Offline Core
# =============================================================================

from typing import Optional, Dict, Any


class KioskCacheError(Exception):
    """
    Base exception for all offline cache, sync and audit errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "STORE_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "KIOSK_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# LOCAL STORE EXCEPTIONS
# =============================================================================

class LocalStoreError(KioskCacheError):
    """Raised when the local SQLite store cannot be opened or read"""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        backend: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table
        if backend:
            details["backend"] = backend

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            **kwargs,
        )


class LocalWriteError(KioskCacheError):
    """Raised when a bulk write is rolled back"""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        record_count: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table
        if record_count is not None:
            details["record_count"] = record_count

        super().__init__(
            message=message,
            code="STORE_002",
            details=details,
            **kwargs,
        )


# =============================================================================
# SCHEMA EXCEPTIONS
# =============================================================================

class UnknownTableError(KioskCacheError):
    """Raised when a table name is not part of the schema catalog"""

    def __init__(self, message: str, table: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table

        super().__init__(
            message=message,
            code="SCHEMA_001",
            details=details,
            **kwargs,
        )


class SchemaRepairError(KioskCacheError):
    """Raised when a CREATE TABLE / ALTER TABLE repair fails"""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        fix: Optional[str] = None,
        column: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table
        if fix:
            details["fix"] = fix
        if column:
            details["column"] = column

        super().__init__(
            message=message,
            code="SCHEMA_002",
            details=details,
            **kwargs,
        )


# =============================================================================
# REMOTE SOURCE EXCEPTIONS
# =============================================================================

class RemoteFetchError(KioskCacheError):
    """Raised when a remote (Supabase) call fails"""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            code=kwargs.pop("code", "REMOTE_001"),
            details=details,
            **kwargs,
        )


class RemoteTimeoutError(RemoteFetchError):
    """Raised when a remote call exceeds its time budget"""

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        details = kwargs.pop("details", {})
        if timeout is not None:
            details["timeout"] = timeout

        super().__init__(
            message=message,
            code="REMOTE_002",
            details=details,
            **kwargs,
        )


# =============================================================================
# TILE CACHE EXCEPTIONS
# =============================================================================

class TileFetchError(KioskCacheError):
    """Raised when a map tile cannot be downloaded"""

    def __init__(
        self,
        message: str,
        tile: Optional[str] = None,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if tile:
            details["tile"] = tile
        if url:
            details["url"] = url
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(
            message=message,
            code="TILE_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(KioskCacheError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
