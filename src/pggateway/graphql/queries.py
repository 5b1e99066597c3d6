"""
Root query fields.

Every resolver talks to the database through `info.context["pg_client"]`,
the connection checked out for this operation with the caller's role and
session settings already applied. Resolvers never open connections of their
own. Sibling fields resolve concurrently, so statements go through
`_execute`, which holds the operation's `pg_lock`.
"""
import strawberry
from sqlalchemy import bindparam, text
from strawberry.types import Info

from pggateway.context.broker import SETTINGS_INFO_KEY
from pggateway.core.database import is_postgres
from pggateway.graphql.types import Setting, Table

CURRENT_SETTING = text("select current_setting(:name, true)")

PG_TABLES = text(
    "select table_schema, table_name from information_schema.tables "
    "where table_schema in :schemas order by table_schema, table_name"
).bindparams(bindparam("schemas", expanding=True))

SQLITE_TABLES = text(
    "select 'main', name from sqlite_master "
    "where type = 'table' and name not like 'sqlite_%' order by name"
)


async def _execute(info: Info, statement, params=None):
    async with info.context["pg_lock"]:
        return await info.context["pg_client"].execute(statement, params)


async def _read_setting(info: Info, name: str) -> str | None:
    connection = info.context["pg_client"]
    if is_postgres(connection):
        result = await _execute(info, CURRENT_SETTING, {"name": name})
        value = result.scalar()
        # current_setting(..., true) yields '' for a cleared custom setting
        return value or None
    return connection.info.get(SETTINGS_INFO_KEY, {}).get(name)


@strawberry.type
class Query:
    @strawberry.field
    async def current_role(self, info: Info) -> str | None:
        """Role the operation runs as."""
        return await _read_setting(info, "role")

    @strawberry.field
    async def setting(self, info: Info, name: str) -> Setting:
        """A session setting as seen by the database, e.g. `jwt.claims.sub`."""
        return Setting(name=name, value=await _read_setting(info, name))

    @strawberry.field
    async def tables(self, info: Info) -> list[Table]:
        """Tables visible to the caller in the configured schemas."""
        if is_postgres(info.context["pg_client"]):
            result = await _execute(info, PG_TABLES, {"schemas": info.context["schema_names"]})
        else:
            result = await _execute(info, SQLITE_TABLES)
        return [Table(schema=schema, name=name) for schema, name in result.all()]
