"""
External MySQL source access, optionally through an SSH tunnel.

PyMySQL and Paramiko are blocking, so every public coroutine here hands the
work to a worker thread and opens a fresh connection for it.
"""

import asyncio
import io
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import paramiko
import pymysql
import pymysql.cursors
from pydantic import BaseModel, Field

from core.config import settings
from core.exceptions import SourceUnreachableError
from ingestion.extractors.introspector import SchemaIntrospector, quote_mysql_ident
from schemas.normalized import DatabaseSchema, SourceColumn

logger = logging.getLogger(__name__)

_KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


class SshTunnelConfig(BaseModel):
    host: str
    port: int = 22
    username: str
    password: Optional[str] = None
    private_key: Optional[str] = None


class SourceConnectionConfig(BaseModel):
    """Everything needed to open a connection to an external MySQL database"""
    host: str
    port: int = 3306
    user: str
    password: str = ""
    database: str
    ssh: Optional[SshTunnelConfig] = None
    connect_timeout: int = Field(default_factory=lambda: settings.SOURCE_CONNECT_TIMEOUT_SECONDS)


@dataclass
class SourceChunk:
    """One window of rows plus the column metadata needed to convert them"""
    columns: List[SourceColumn] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)


def _load_private_key(private_key: str) -> paramiko.PKey:
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(private_key))
        except paramiko.SSHException:
            continue
    raise paramiko.SSHException("Unsupported or invalid private key format")


def _open_tunnel(config: SourceConnectionConfig):
    """Connect to the bastion and open a direct-tcpip channel to the database."""
    ssh = config.ssh
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    connect_kwargs: dict = {
        "hostname": ssh.host,
        "port": ssh.port,
        "username": ssh.username,
        "timeout": config.connect_timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }
    if ssh.private_key:
        connect_kwargs["pkey"] = _load_private_key(ssh.private_key)
    if ssh.password:
        connect_kwargs["password"] = ssh.password

    try:
        client.connect(**connect_kwargs)
        channel = client.get_transport().open_channel(
            "direct-tcpip",
            (config.host, config.port),
            ("127.0.0.1", 0),
            timeout=config.connect_timeout,
        )
    except Exception:
        client.close()
        raise

    return client, channel


@contextmanager
def open_source_connection(
    config: SourceConnectionConfig,
    read_timeout: Optional[int] = None
) -> Iterator[pymysql.connections.Connection]:
    """
    Open a PyMySQL connection (DictCursor rows) to the source.

    Raises:
        SourceUnreachableError: Tunnel or database connection failed
    """
    client = None
    connection = pymysql.connect(
        host=config.host,
        port=config.port,
        user=config.user,
        password=config.password,
        database=config.database,
        charset="utf8mb4",
        cursorclass=pymysql.cursors.DictCursor,
        connect_timeout=config.connect_timeout,
        read_timeout=read_timeout,
        defer_connect=True,
    )

    try:
        if config.ssh:
            client, channel = _open_tunnel(config)
            connection.connect(sock=channel)
        else:
            connection.connect()
    except (pymysql.MySQLError, paramiko.SSHException, OSError) as e:
        if client is not None:
            client.close()
        raise SourceUnreachableError(
            f"Could not connect to {config.host}:{config.port}: {e}",
            context={
                "host": config.host,
                "port": config.port,
                "via_ssh": config.ssh is not None,
            },
            original_exception=e
        )

    try:
        yield connection
    finally:
        if connection.open:
            connection.close()
        if client is not None:
            client.close()


class MySqlSource:
    """
    Async facade over one external MySQL database.

    Example:
        source = MySqlSource(config)
        schema = await source.introspect()
        chunk = await source.read_chunk("orders", offset=0, limit=5000)
    """

    def __init__(self, config: SourceConnectionConfig):
        self.config = config

    def _introspect_sync(self) -> DatabaseSchema:
        with open_source_connection(self.config) as conn:
            with conn.cursor() as cursor:
                return SchemaIntrospector(cursor).introspect()

    def _read_chunk_sync(self, table_name: str, offset: int, limit: int) -> SourceChunk:
        with open_source_connection(self.config) as conn:
            with conn.cursor() as cursor:
                introspector = SchemaIntrospector(cursor)
                columns = introspector.get_columns(table_name, introspector.get_primary_keys(table_name))
                # Offset paging over the natural row order; the table must not change mid-sync
                cursor.execute(
                    f"SELECT * FROM {quote_mysql_ident(table_name)} LIMIT %s OFFSET %s",
                    (limit, offset)
                )
                rows = list(cursor.fetchall())
        return SourceChunk(columns=columns, rows=rows)

    def _execute_sync(self, sql: str, params, timeout: Optional[int]) -> List[Dict[str, Any]]:
        with open_source_connection(self.config, read_timeout=timeout) as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, params or None)
                return list(cursor.fetchall())

    async def introspect(self) -> DatabaseSchema:
        logger.info(f"Introspecting source {self.config.host}/{self.config.database}")
        return await asyncio.to_thread(self._introspect_sync)

    async def read_chunk(self, table_name: str, offset: int, limit: int) -> SourceChunk:
        return await asyncio.to_thread(self._read_chunk_sync, table_name, offset, limit)

    async def execute(self, sql: str, params=None, timeout: Optional[int] = None) -> List[Dict[str, Any]]:
        """Run a query in the source's own dialect (pyformat placeholders)."""
        return await asyncio.to_thread(self._execute_sync, sql, params, timeout)
