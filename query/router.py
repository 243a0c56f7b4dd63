# ============================================================================
# File: query/router.py
# ============================================================================

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from core.config import settings
from core.exceptions import (
    ConnectionNotFoundError,
    MissingTenantError,
    SyncNotConfiguredError,
    TenantRoleNotFoundError,
    UnknownStorageLocationError,
    error_kind_of,
    error_message_of,
)
from core.sql import is_safe_role_name, quote_ident
from ingestion.connections import build_source_config, get_connection
from ingestion.extractors.mysql_source import MySqlSource
from models.base import StorageLocation
from models.sync import DatasourceSync
from query.dialect import number_placeholders, to_pyformat, translate_identifiers
from query.tenants import get_tenant_role_name, tenant_schema_for_role
from schemas.api import QueryResult
import logging

logger = logging.getLogger(__name__)

TenantRoleResolver = Callable[[AsyncSession, str], Awaitable[Optional[str]]]


def _location_value(location) -> str:
    return location.value if isinstance(location, StorageLocation) else str(location)


class QueryRouter:
    """
    Route a logical query to the backend that holds the connection's data.

    ``route`` never raises: every failure comes back as a QueryResult with
    ``error`` and ``error_kind`` set and no rows, so a caller loading many
    charts keeps going when one of them fails.

    Role and search_path changes are ``SET LOCAL`` on the same session and
    transaction as the query itself, so they end with it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        internal_session_factory: Optional[async_sessionmaker] = None,
        source_factory: Callable = MySqlSource,
        tenant_role_resolver: Optional[TenantRoleResolver] = None
    ):
        self.session_factory = session_factory
        self.internal_session_factory = internal_session_factory or session_factory
        self.source_factory = source_factory
        self.resolve_tenant_role = tenant_role_resolver or get_tenant_role_name

    async def route(
        self,
        connection_id: int,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        tenant_id: Optional[str] = None
    ) -> QueryResult:
        location = None
        try:
            async with self.session_factory() as session:
                connection = await get_connection(session, connection_id)
                if connection is None:
                    raise ConnectionNotFoundError(
                        f"Connection {connection_id} not found",
                        context={"connection_id": connection_id}
                    )
                location = _location_value(connection.storage_location or StorageLocation.EXTERNAL)

                namespace = None
                if location == StorageLocation.SYNCED.value:
                    namespace = await self._synced_namespace(session, connection_id)

            logger.info(f"Routing query for connection {connection_id} to {location}")

            if location == StorageLocation.EXTERNAL.value:
                rows = await self._query_external(connection, sql, params)
            elif location == StorageLocation.TENANT_SHARED.value:
                rows = await self._query_tenant_shared(sql, params, tenant_id)
            elif location == StorageLocation.SYNCED.value:
                rows = await self._query_synced(namespace, sql, params)
            else:
                raise UnknownStorageLocationError(
                    f"Unknown storage location: {location}",
                    context={"connection_id": connection_id}
                )

        except Exception as e:
            logger.error(f"Query for connection {connection_id} failed: {e}")
            return QueryResult(
                rows=[],
                storage_location=self._known_location(location),
                error=error_message_of(e),
                error_kind=error_kind_of(e)
            )

        return QueryResult(rows=rows, storage_location=location)

    @staticmethod
    def _known_location(location: Optional[str]) -> Optional[str]:
        if location in {l.value for l in StorageLocation}:
            return location
        return None

    async def _synced_namespace(self, session: AsyncSession, connection_id: int) -> str:
        result = await session.execute(
            select(DatasourceSync.target_schema_name)
            .where(DatasourceSync.connection_id == connection_id)
        )
        namespace = result.scalar_one_or_none()
        if not namespace:
            raise SyncNotConfiguredError(
                f"Connection {connection_id} has no synced schema yet",
                context={"connection_id": connection_id}
            )
        return namespace

    # ------------------------------------------------------------------
    # external: source dialect, no translation
    # ------------------------------------------------------------------
    async def _query_external(self, connection, sql: str, params) -> List[Dict[str, Any]]:
        source = self.source_factory(build_source_config(connection))
        source_sql, source_params = to_pyformat(sql, params)
        return await source.execute(
            source_sql,
            source_params,
            timeout=settings.EXTERNAL_QUERY_TIMEOUT_SECONDS
        )

    # ------------------------------------------------------------------
    # tenant_shared: role + tenant schema first, shared tables second
    # ------------------------------------------------------------------
    async def _query_tenant_shared(self, sql: str, params, tenant_id: Optional[str]) -> List[Dict[str, Any]]:
        if not tenant_id:
            raise MissingTenantError("tenant_id is required for tenant-shared storage")

        pg_sql, binds = number_placeholders(translate_identifiers(sql), params)

        async with self.internal_session_factory() as session:
            async with session.begin():
                role_name = await self.resolve_tenant_role(session, tenant_id)
                if not role_name:
                    raise TenantRoleNotFoundError(
                        f"Tenant {tenant_id} not found or missing role",
                        context={"tenant_id": tenant_id}
                    )
                if not is_safe_role_name(role_name):
                    raise TenantRoleNotFoundError(
                        f"Tenant {tenant_id} has an invalid role name",
                        context={"tenant_id": tenant_id, "role_name": role_name}
                    )

                tenant_schema = tenant_schema_for_role(role_name)
                await session.execute(text(f"SET LOCAL ROLE {quote_ident(role_name)}"))
                await session.execute(text(
                    f"SET LOCAL search_path TO {quote_ident(tenant_schema)}, "
                    f"{quote_ident(settings.SHARED_SCHEMA)}, public"
                ))
                result = await session.execute(text(pg_sql), binds)
                return [dict(row) for row in result.mappings().all()]

    # ------------------------------------------------------------------
    # synced: the connection's private schema
    # ------------------------------------------------------------------
    async def _query_synced(self, namespace: str, sql: str, params) -> List[Dict[str, Any]]:
        pg_sql, binds = number_placeholders(translate_identifiers(sql), params)

        async with self.internal_session_factory() as session:
            async with session.begin():
                await session.execute(text(f"SET LOCAL search_path TO {quote_ident(namespace)}, public"))
                result = await session.execute(text(pg_sql), binds)
                return [dict(row) for row in result.mappings().all()]
