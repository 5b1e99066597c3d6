"""GraphQL types for the database objects exposed through the gateway."""
import strawberry


@strawberry.type
class Table:
    schema: str
    name: str


@strawberry.type
class Setting:
    name: str
    value: str | None
