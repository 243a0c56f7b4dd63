"""
Custom exceptions for the sync engine and query router with structured error context.

Every exception carries a stable ``error_kind`` tag so that callers fanning
out over many tables or charts can report a failure as a message plus a
machine-readable kind, never as a raw stack trace.

Exception Hierarchy:
    SyncEngineError (base)
    ├── SourceError
    │   ├── SourceUnreachableError
    │   └── IntrospectionError
    ├── ProvisioningError
    ├── TransferError
    ├── RoutingError
    │   ├── ConnectionNotFoundError
    │   ├── MissingTenantError
    │   ├── TenantRoleNotFoundError
    │   ├── SyncNotConfiguredError
    │   └── UnknownStorageLocationError
    └── CacheError
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class SyncEngineError(Exception):
    """
    Base exception for all sync and routing errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (connection, table, etc.)
        original_exception: The original exception that was caught (if any)
    """

    error_kind = "internal_error"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "error_kind": self.error_kind,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def error_kind_of(exc: BaseException) -> str:
    """Stable kind tag for any exception, engine-defined or not."""
    if isinstance(exc, SyncEngineError):
        return exc.error_kind
    return "internal_error"


def error_message_of(exc: BaseException) -> str:
    """User-facing message: the engine message when available, else str(exc)."""
    if isinstance(exc, SyncEngineError):
        return exc.message
    return str(exc) or type(exc).__name__


# ============================================================================
# Source Errors
# ============================================================================

class SourceError(SyncEngineError):
    """Base exception for failures talking to an external source database."""
    error_kind = "source_error"


class SourceUnreachableError(SourceError):
    """
    Raised when the external database (or its SSH bastion) cannot be reached
    or rejects the credentials.

    Context should include:
        - host: Source host
        - port: Source port
        - via_ssh: Whether an SSH tunnel was used
    """
    error_kind = "source_unreachable"


class IntrospectionError(SourceError):
    """
    Raised when the source catalog cannot be read into a schema model.

    Context should include:
        - table_name: Table being introspected (if applicable)
    """
    error_kind = "introspection_failed"


# ============================================================================
# Provisioning / Transfer Errors
# ============================================================================

class ProvisioningError(SyncEngineError):
    """
    Raised when a namespace cannot be created in the target store.

    Per-table DDL failures are reported structurally, not raised.
    """
    error_kind = "provisioning_failed"


class TransferError(SyncEngineError):
    """
    Raised while moving a chunk of rows from source to target.

    Context should include:
        - table_name: Table being transferred
        - offset: Row offset of the failing chunk
    """
    error_kind = "transfer_failed"


# ============================================================================
# Routing Errors
# ============================================================================

class RoutingError(SyncEngineError):
    """Base exception for query routing failures."""
    error_kind = "routing_failed"


class ConnectionNotFoundError(RoutingError):
    error_kind = "connection_not_found"


class MissingTenantError(RoutingError):
    """Tenant-shared storage was queried without a tenant id."""
    error_kind = "missing_tenant"


class TenantRoleNotFoundError(RoutingError):
    error_kind = "tenant_role_not_found"


class SyncNotConfiguredError(RoutingError):
    """A synced connection has no sync record or target schema yet."""
    error_kind = "sync_not_configured"


class UnknownStorageLocationError(RoutingError):
    error_kind = "unknown_storage_location"


# ============================================================================
# Cache Errors
# ============================================================================

class CacheError(SyncEngineError):
    error_kind = "cache_failed"
