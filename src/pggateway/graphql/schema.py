import strawberry
from strawberry.fastapi import GraphQLRouter

from pggateway.context import ResourceContextBroker, ResourceContextExtension, SessionSettingsResolver
from pggateway.graphql.queries import Query


def build_schema(
    broker: ResourceContextBroker,
    settings_resolver: SessionSettingsResolver,
) -> strawberry.Schema:
    """Schema whose operations each run on their own checked-out connection."""
    return strawberry.Schema(
        query=Query,
        extensions=[ResourceContextExtension.bind(broker, settings_resolver)],
    )


def build_graphql_router(
    schema: strawberry.Schema,
    schema_names: list[str],
) -> GraphQLRouter:
    async def get_context():
        """
        Static per-request context.

        The connection is not provisioned here: the schema extension adds
        `pg_client`, `jwt_token`, `jwt_claims`, `pg_settings` and `pg_role`
        once the operation has been validated, and releases it afterwards.
        """
        return {
            "schema_names": list(schema_names),
        }

    return GraphQLRouter(
        schema,
        context_getter=get_context,
    )
