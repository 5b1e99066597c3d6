from types import SimpleNamespace

import anyio
import pytest
from httpx import ASGITransport, AsyncClient
from asgi_lifespan import LifespanManager
from jose import jwt

from pggateway.context import BrokerOptions, ResourceContextBroker, SessionSettingsResolver
from pggateway.core.config import DevSettings
from pggateway.main import create_app

JWT_SECRET = "test-secret"


class FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def scalar(self):
        return self._rows[0][0] if self._rows else None

    def all(self):
        return list(self._rows)


class FakeConnection:
    """Records what the broker does to a connection.

    `set_config(..., true)` values live in `gucs` until the transaction ends,
    like transaction-local settings in PostgreSQL.
    """

    def __init__(self, pool, name, dialect="postgresql"):
        self.pool = pool
        self.name = name
        self.dialect = SimpleNamespace(name=dialect)
        self._info = {}
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0
        self.gucs = {}
        self.statements = []
        self.commits = 0
        self.rollbacks = 0
        self._in_transaction = False

    def __repr__(self):
        return f"<FakeConnection {self.name}>"

    @property
    def info(self):
        if self.closed:
            raise RuntimeError("This Connection is closed")
        return self._info

    async def begin(self):
        self._in_transaction = True
        self.statements.append(("begin", None))

    def in_transaction(self):
        if self.closed:
            raise RuntimeError("This Connection is closed")
        return self._in_transaction

    async def execute(self, statement, params=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return await self._execute(str(statement), params)
        finally:
            self.in_flight -= 1

    async def _execute(self, sql, params):
        self.statements.append((sql, params))
        await anyio.sleep(0)
        if "set_config" in sql:
            if self.pool.set_config_entered is not None:
                self.pool.set_config_entered.set()
                await anyio.sleep_forever()
            if self.pool.fail_set_config:
                raise RuntimeError(f'role "{params["value"]}" does not exist')
            self.gucs[params["key"]] = params["value"]
            return FakeResult([(params["value"],)])
        if "current_setting" in sql:
            if params["name"] == "explode":
                raise RuntimeError("unrecognized configuration parameter")
            return FakeResult([(self.gucs.get(params["name"], ""),)])
        return FakeResult([])

    async def commit(self):
        if self.pool.fail_commit:
            raise ConnectionError("server closed the connection unexpectedly")
        self.commits += 1
        self._end()

    async def rollback(self):
        if self.closed:
            raise RuntimeError("This Connection is closed")
        self.rollbacks += 1
        self._end()

    def _end(self):
        self._in_transaction = False
        self.gucs.clear()


class FakePool:
    """In-memory stand-in for the pool capability: acquire/release only."""

    def __init__(self, size=2, dialect="postgresql"):
        self.size = size
        self.available = [FakeConnection(self, f"conn-{i}", dialect) for i in range(size)]
        self.acquired = 0
        self.released = 0
        self.fail_acquire = False
        self.fail_set_config = False
        self.fail_commit = False
        self.fail_release = False
        self.set_config_entered = None

    @property
    def available_count(self):
        return len(self.available)

    async def acquire(self):
        await anyio.sleep(0)
        if self.fail_acquire or not self.available:
            raise TimeoutError("timeout exceeded when trying to connect")
        self.acquired += 1
        return self.available.pop(0)

    async def release(self, connection):
        await anyio.sleep(0)
        if self.fail_release:
            raise RuntimeError("connection already closed")
        assert connection not in self.available, "connection released twice"
        self.released += 1
        self.available.append(connection)


def make_token(claims, secret=JWT_SECRET):
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def options():
    return BrokerOptions(jwt_secret=JWT_SECRET, default_role="anonymous")


@pytest.fixture
def broker(pool, options):
    return ResourceContextBroker(pool, options)


@pytest.fixture
def static_resolver():
    return SessionSettingsResolver({"app.locale": "en"})


@pytest.fixture
def test_settings():
    return DevSettings(JWT_SECRET=JWT_SECRET, DEFAULT_ROLE="anonymous", SCHEMA_NAMES="public, app")


@pytest.fixture
def pg_settings():
    """Session settings source used by `app`; override per test module."""
    return {"app.locale": "en"}


@pytest.fixture
def app(test_settings, pool, pg_settings):
    return create_app(config=test_settings, pool=pool, pg_settings=pg_settings)


@pytest.fixture
async def client(app):
    """Async test client with lifespan support."""
    async with LifespanManager(app) as manager:
        async with AsyncClient(
            transport=ASGITransport(app=manager.app),
            base_url="http://test",
        ) as ac:
            yield ac
