"""
Unit tests for MySQL schema introspection
"""

import pytest
import pymysql
from unittest.mock import MagicMock, patch
from core.exceptions import IntrospectionError, SourceUnreachableError
from ingestion.extractors.introspector import (
    COLUMNS_SQL,
    FOREIGN_KEYS_SQL,
    PRIMARY_KEY_SQL,
    TABLES_SQL,
    SchemaIntrospector,
    quote_mysql_ident,
)
from ingestion.extractors.mysql_source import (
    SourceConnectionConfig,
    SshTunnelConfig,
    open_source_connection,
)


class FakeCursor:
    """DictCursor stand-in answering the catalog queries from fixed data"""

    def __init__(self, tables, columns, primary_keys, counts, foreign_keys=None):
        self.tables = tables
        self.columns = columns
        self.primary_keys = primary_keys
        self.counts = counts
        self.foreign_keys = foreign_keys or []
        self.executed = []
        self._rows = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        if sql == TABLES_SQL:
            self._rows = [{"table_name": t} for t in self.tables]
        elif sql == COLUMNS_SQL:
            self._rows = self.columns.get(params[0], [])
        elif sql == PRIMARY_KEY_SQL:
            self._rows = [{"column_name": c} for c in self.primary_keys.get(params[0], [])]
        elif sql == FOREIGN_KEYS_SQL:
            self._rows = self.foreign_keys
        elif sql.startswith("select count(*)"):
            table = sql.rsplit("`", 2)[1]
            self._rows = [{"row_count": self.counts[table]}]
        else:
            raise AssertionError(f"unexpected query: {sql}")

    def fetchall(self):
        return self._rows


def _column(name, data_type, column_type, nullable="YES", key="", default=None, extra=""):
    return {
        "column_name": name,
        "data_type": data_type,
        "column_type": column_type,
        "is_nullable": nullable,
        "column_key": key,
        "column_default": default,
        "extra": extra,
    }


@pytest.fixture
def shop_cursor():
    return FakeCursor(
        tables=["customers", "order_items"],
        columns={
            "customers": [
                _column("id", "int", "int(11)", nullable="NO", key="PRI", extra="auto_increment"),
                _column("email", b"varchar", b"varchar(255)"),
            ],
            "order_items": [
                _column("order_id", "int", "int(11)", nullable="NO", key="PRI"),
                _column("line_no", "smallint", "smallint(6)", nullable="NO", key="PRI"),
                _column("customer_id", "int", "int(11)"),
            ],
        },
        primary_keys={"customers": ["id"], "order_items": ["order_id", "line_no"]},
        counts={"customers": 0, "order_items": 42},
        foreign_keys=[
            {
                "constraint_name": "fk_items_customer", "source_table": "order_items",
                "target_table": "customers", "position": 1, "source_column": "customer_id",
                "target_column": "id", "update_rule": "CASCADE", "delete_rule": "RESTRICT",
            },
        ],
    )


class TestSchemaIntrospector:
    """Test building the normalized schema model"""

    def test_introspect_tables(self, shop_cursor):
        schema = SchemaIntrospector(shop_cursor).introspect()

        assert [t.table_name for t in schema.tables] == ["customers", "order_items"]

        customers = schema.get_table("customers")
        assert customers.row_count == 0
        assert customers.auto_increment_column == "id"
        assert customers.primary_keys == ["id"]
        assert customers.columns[0].nullable is False
        assert customers.columns[1].type == "varchar"
        assert customers.columns[1].column_type == "varchar(255)"

        items = schema.get_table("order_items")
        assert items.primary_keys == ["order_id", "line_no"]
        assert items.auto_increment_column is None
        assert items.row_count == 42

    def test_foreign_keys_grouped(self, shop_cursor):
        shop_cursor.foreign_keys.append({
            "constraint_name": "fk_items_customer", "source_table": "order_items",
            "target_table": "customers", "position": 2, "source_column": "customer_region",
            "target_column": "region", "update_rule": "CASCADE", "delete_rule": "RESTRICT",
        })

        foreign_keys = SchemaIntrospector(shop_cursor).get_foreign_keys()

        assert len(foreign_keys) == 1
        fk = foreign_keys[0]
        assert fk.target_table == "customers"
        assert [(p.source_column, p.target_column) for p in fk.column_pairs] == [
            ("customer_id", "id"),
            ("customer_region", "region"),
        ]
        assert fk.delete_rule == "RESTRICT"

    def test_table_without_columns_raises(self, shop_cursor):
        shop_cursor.columns["order_items"] = []

        with pytest.raises(IntrospectionError) as exc_info:
            SchemaIntrospector(shop_cursor).introspect()

        assert exc_info.value.context["table_name"] == "order_items"

    def test_table_without_primary_key(self, shop_cursor):
        shop_cursor.primary_keys["order_items"] = []
        for col in shop_cursor.columns["order_items"]:
            col["column_key"] = ""

        table = SchemaIntrospector(shop_cursor).introspect_table("order_items")
        assert table.primary_keys == []

    def test_count_query_quotes_table(self, shop_cursor):
        SchemaIntrospector(shop_cursor).get_row_count("order_items")
        assert shop_cursor.executed[-1][0] == "select count(*) as row_count from `order_items`"

    def test_quote_mysql_ident_escapes_backticks(self):
        assert quote_mysql_ident("we`ird") == "`we``ird`"


class TestOpenSourceConnection:
    """Test connection failures surface as SourceUnreachableError"""

    def test_direct_connect_failure(self):
        config = SourceConnectionConfig(host="db.example.com", user="u", database="shop", connect_timeout=1)
        connection = MagicMock()
        connection.connect.side_effect = pymysql.err.OperationalError(2003, "Can't connect")

        with patch("ingestion.extractors.mysql_source.pymysql.connect", return_value=connection):
            with pytest.raises(SourceUnreachableError) as exc_info:
                with open_source_connection(config):
                    pass

        assert exc_info.value.error_kind == "source_unreachable"
        assert exc_info.value.context["via_ssh"] is False

    def test_tunnel_failure_closes_client(self):
        config = SourceConnectionConfig(
            host="10.0.0.5", user="u", database="shop", connect_timeout=1,
            ssh=SshTunnelConfig(host="bastion.example.com", username="tunnel", password="pw"),
        )
        client = MagicMock()
        client.connect.side_effect = OSError("connection refused")

        with patch("ingestion.extractors.mysql_source.pymysql.connect", return_value=MagicMock()), \
                patch("ingestion.extractors.mysql_source.paramiko.SSHClient", return_value=client):
            with pytest.raises(SourceUnreachableError) as exc_info:
                with open_source_connection(config):
                    pass

        assert exc_info.value.context["via_ssh"] is True
        client.close.assert_called()

    def test_tunnel_channel_is_used_as_socket(self):
        config = SourceConnectionConfig(
            host="10.0.0.5", user="u", database="shop", connect_timeout=1,
            ssh=SshTunnelConfig(host="bastion.example.com", username="tunnel", password="pw"),
        )
        client = MagicMock()
        channel = client.get_transport.return_value.open_channel.return_value
        connection = MagicMock()

        with patch("ingestion.extractors.mysql_source.pymysql.connect", return_value=connection), \
                patch("ingestion.extractors.mysql_source.paramiko.SSHClient", return_value=client):
            with open_source_connection(config) as conn:
                assert conn is connection

        connection.connect.assert_called_once_with(sock=channel)
        client.get_transport.return_value.open_channel.assert_called_once_with(
            "direct-tcpip", ("10.0.0.5", 3306), ("127.0.0.1", 0), timeout=1
        )
        client.close.assert_called_once()
