"""
Core utilities and configuration for the sync engine.

This package provides foundational components used by the transfer
pipeline and the query router:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Custom exception hierarchy with stable error kinds
    logging: Logging configuration and utilities
    sql: Identifier and literal quoting for PostgreSQL

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import SourceUnreachableError, RoutingError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "SyncEngineError",
    "SourceError",
    "SourceUnreachableError",
    "IntrospectionError",
    "ProvisioningError",
    "TransferError",
    "RoutingError",
    "ConnectionNotFoundError",
    "MissingTenantError",
    "TenantRoleNotFoundError",
    "SyncNotConfiguredError",
    "UnknownStorageLocationError",
    "CacheError",
]
