"""
Unit tests for the storage-location query router
"""

import re
import pytest
from models.base import StorageLocation
from models.sync import DatasourceSync
from query.router import QueryRouter


class FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def mappings(self):
        return self

    def all(self):
        return list(self._rows)


class FakeTransaction:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        self.session.in_transaction = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        # SET LOCAL settings end with the transaction
        self.session.in_transaction = False
        self.session.role = None
        self.session.search_path = ["public"]
        self.session.store.transactions.append("rollback" if exc_type else "commit")
        return False


class FakeInternalSession:
    """
    One pooled connection of the internal store.

    Resolves unqualified table names through search_path the way
    PostgreSQL does, so isolation between tenants can be asserted.
    """

    def __init__(self, store):
        self.store = store
        self.role = None
        self.search_path = ["public"]
        self.in_transaction = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def begin(self):
        return FakeTransaction(self)

    async def execute(self, statement, params=None):
        sql = str(statement)
        self.store.statements.append((sql, params, self.in_transaction))

        if sql.startswith("SET LOCAL ROLE"):
            self.role = sql.split()[-1].strip('"')
            return FakeResult([])
        if sql.startswith("SET LOCAL search_path TO"):
            path = sql[len("SET LOCAL search_path TO"):]
            self.search_path = [p.strip().strip('"') for p in path.split(",")]
            return FakeResult([])

        table = re.search(r'FROM\s+"?(\w+)"?', sql).group(1)
        for schema in self.search_path:
            if table in self.store.schemas.get(schema, {}):
                return FakeResult(self.store.schemas[schema][table])
        raise RuntimeError(f'relation "{table}" does not exist')


class FakeInternalStore:
    def __init__(self, schemas):
        self.schemas = schemas
        self.statements = []
        self.transactions = []

    def __call__(self):
        return FakeInternalSession(self)


TENANT_ROLES = {
    "tenant-acme": "tenant_acme_role",
    "tenant-globex": "tenant_globex_role",
}


async def resolve_role(session, tenant_id):
    return TENANT_ROLES.get(tenant_id)


@pytest.fixture
def internal_store():
    return FakeInternalStore({
        "tenant_acme": {"work_orders": [{"id": 1, "owner": "acme"}]},
        "tenant_globex": {"work_orders": [{"id": 7, "owner": "globex"}]},
        "shared": {
            "work_orders": [{"id": 99, "owner": "base table"}],
            "sites": [{"id": 1, "name": "HQ"}],
        },
        "conn_ab12cd34_shop": {"orders": [{"id": 1, "total": 10}, {"id": 2, "total": 20}]},
    })


@pytest.fixture
def router(session_factory, internal_store, source_db):
    return QueryRouter(
        session_factory,
        internal_session_factory=internal_store,
        source_factory=source_db.factory,
        tenant_role_resolver=resolve_role,
    )


class TestTenantSharedRouting:
    """Test tenant isolation on the shared store"""

    @pytest.mark.asyncio
    async def test_tenants_see_their_own_rows(self, router, make_connection):
        connection = await make_connection(StorageLocation.TENANT_SHARED)
        sql = "SELECT * FROM `work_orders`"

        acme = await router.route(connection.id, sql, [], tenant_id="tenant-acme")
        globex = await router.route(connection.id, sql, [], tenant_id="tenant-globex")

        assert acme.error is None and globex.error is None
        assert acme.rows == [{"id": 1, "owner": "acme"}]
        assert globex.rows == [{"id": 7, "owner": "globex"}]
        assert acme.storage_location == "tenant_shared"

    @pytest.mark.asyncio
    async def test_shared_tables_are_visible_to_every_tenant(self, router, make_connection):
        connection = await make_connection(StorageLocation.TENANT_SHARED)

        result = await router.route(connection.id, "SELECT * FROM sites", tenant_id="tenant-globex")

        assert result.rows == [{"id": 1, "name": "HQ"}]

    @pytest.mark.asyncio
    async def test_role_and_search_path_share_the_query_transaction(self, router, make_connection, internal_store):
        connection = await make_connection(StorageLocation.TENANT_SHARED)

        await router.route(connection.id, "SELECT * FROM `work_orders` WHERE id = ?", [1], tenant_id="tenant-acme")

        statements = [s for s, _, _ in internal_store.statements]
        assert statements == [
            'SET LOCAL ROLE "tenant_acme_role"',
            'SET LOCAL search_path TO "tenant_acme", "shared", public',
            'SELECT * FROM "work_orders" WHERE id = :p1',
        ]
        assert all(in_tx for _, _, in_tx in internal_store.statements)
        assert internal_store.statements[-1][1] == {"p1": 1}
        assert internal_store.transactions == ["commit"]

    @pytest.mark.asyncio
    async def test_missing_tenant(self, router, make_connection, internal_store):
        connection = await make_connection(StorageLocation.TENANT_SHARED)

        result = await router.route(connection.id, "SELECT * FROM work_orders")

        assert result.rows == []
        assert result.error_kind == "missing_tenant"
        assert internal_store.statements == []

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, router, make_connection):
        connection = await make_connection(StorageLocation.TENANT_SHARED)

        result = await router.route(connection.id, "SELECT * FROM work_orders", tenant_id="tenant-unknown")

        assert result.rows == []
        assert result.error_kind == "tenant_role_not_found"

    @pytest.mark.asyncio
    async def test_unsafe_role_name_is_rejected(self, session_factory, internal_store, make_connection):
        async def bad_resolver(session, tenant_id):
            return "tenant_x_role; DROP TABLE users"

        router = QueryRouter(session_factory, internal_store, tenant_role_resolver=bad_resolver)
        connection = await make_connection(StorageLocation.TENANT_SHARED)

        result = await router.route(connection.id, "SELECT * FROM work_orders", tenant_id="tenant-x")

        assert result.error_kind == "tenant_role_not_found"
        assert not any(s.startswith("SET LOCAL ROLE") for s, _, _ in internal_store.statements)


class TestSyncedRouting:

    @pytest.mark.asyncio
    async def test_query_runs_in_connection_namespace(self, router, make_connection, session_factory, internal_store):
        connection = await make_connection(StorageLocation.SYNCED)
        async with session_factory() as session:
            session.add(DatasourceSync(connection_id=connection.id, target_schema_name="conn_ab12cd34_shop"))
            await session.commit()

        result = await router.route(connection.id, "SELECT `id`, `total` FROM `orders`")

        assert result.error is None
        assert result.storage_location == "synced"
        assert len(result.rows) == 2
        assert internal_store.statements[0][0] == 'SET LOCAL search_path TO "conn_ab12cd34_shop", public'

    @pytest.mark.asyncio
    async def test_without_sync_record(self, router, make_connection):
        connection = await make_connection(StorageLocation.SYNCED)

        result = await router.route(connection.id, "SELECT * FROM orders")

        assert result.rows == []
        assert result.error_kind == "sync_not_configured"
        assert result.storage_location == "synced"

    @pytest.mark.asyncio
    async def test_query_error_is_returned_not_raised(self, router, make_connection, session_factory, internal_store):
        connection = await make_connection(StorageLocation.SYNCED)
        async with session_factory() as session:
            session.add(DatasourceSync(connection_id=connection.id, target_schema_name="conn_ab12cd34_shop"))
            await session.commit()

        result = await router.route(connection.id, "SELECT * FROM missing_table")

        assert result.rows == []
        assert 'relation "missing_table" does not exist' in result.error
        assert result.error_kind == "internal_error"
        assert internal_store.transactions == ["rollback"]


class TestExternalRouting:

    @pytest.mark.asyncio
    async def test_passthrough_with_pyformat_params(self, router, make_connection, source_db):
        connection = await make_connection(StorageLocation.EXTERNAL)
        source_db.query_rows = [{"status": "paid", "n": 3}]

        result = await router.route(connection.id, "SELECT `status`, COUNT(*) n FROM `orders` WHERE region = ?", ["EU"])

        assert result.rows == [{"status": "paid", "n": 3}]
        sql, params, timeout = source_db.queries[0]
        assert sql == "SELECT `status`, COUNT(*) n FROM `orders` WHERE region = %s"
        assert params == ["EU"]
        assert timeout == 30

    @pytest.mark.asyncio
    async def test_unreachable_source(self, router, make_connection, source_db):
        connection = await make_connection(StorageLocation.EXTERNAL)
        source_db.unreachable = True

        result = await router.route(connection.id, "SELECT 1")

        assert result.rows == []
        assert result.error_kind == "source_unreachable"
        assert result.storage_location == "external"


@pytest.mark.asyncio
async def test_unknown_connection(router):
    result = await router.route(404, "SELECT 1")

    assert result.rows == []
    assert result.error_kind == "connection_not_found"
    assert result.storage_location is None
