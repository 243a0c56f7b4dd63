"""
Tenant role lookup for the shared multi-tenant store
"""

from typing import Optional
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

logger = logging.getLogger(__name__)

ROLE_PREFIX = "tenant_"
ROLE_SUFFIX = "_role"


async def get_tenant_role_name(session: AsyncSession, tenant_id: str) -> Optional[str]:
    """
    Resolve the database role of a tenant.

    Calls the ``tenants.get_tenant_role`` SQL function on the given session.
    Lookup failures are logged and reported as ``None``.
    """
    try:
        result = await session.execute(
            text("SELECT tenants.get_tenant_role(:tenant_id) AS role_name"),
            {"tenant_id": tenant_id}
        )
        return result.scalar() or None
    except SQLAlchemyError as e:
        logger.error(f"Error getting tenant role for {tenant_id}: {e}")
        return None


def tenant_schema_for_role(role_name: str) -> str:
    """tenant_acme_role -> tenant_acme"""
    short_name = role_name
    if short_name.startswith(ROLE_PREFIX):
        short_name = short_name[len(ROLE_PREFIX):]
    if short_name.endswith(ROLE_SUFFIX):
        short_name = short_name[:-len(ROLE_SUFFIX)]
    return f"{ROLE_PREFIX}{short_name}"
