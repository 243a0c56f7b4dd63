"""
Connection record lookup.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ingestion.extractors.mysql_source import SourceConnectionConfig, SshTunnelConfig
from models.connection import DataConnection


async def get_connection(session: AsyncSession, connection_id: int) -> Optional[DataConnection]:
    result = await session.execute(
        select(DataConnection).where(DataConnection.id == connection_id)
    )
    return result.scalar_one_or_none()


def build_source_config(connection: DataConnection) -> SourceConnectionConfig:
    """Source connection settings for a connection record, including its SSH tunnel."""
    ssh = None
    if connection.use_ssh_tunneling and connection.ssh_host:
        ssh = SshTunnelConfig(
            host=connection.ssh_host,
            port=connection.ssh_port or 22,
            username=connection.ssh_user or "",
            password=connection.ssh_password or None,
            private_key=connection.ssh_private_key or None,
        )

    return SourceConnectionConfig(
        host=connection.host,
        port=connection.port or 3306,
        user=connection.username,
        password=connection.password or "",
        database=connection.database_name,
        ssh=ssh,
    )
