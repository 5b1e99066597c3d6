"""
Bind the context broker to Strawberry's per-operation hooks.

Strawberry's `context_getter` has no matching teardown, and a connection
acquired there would leak whenever the request fails before execution. So
the connection is acquired from `on_execute` (after parsing and validation)
and released when `on_operation` unwinds, which happens once per operation
whether execution succeeded, raised, or was cancelled.

Strawberry builds a fresh extension instance for every execution, so each
operation gets its own `RequestLifecycle` and its own release slot.
"""
import enum
from collections.abc import AsyncIterator, MutableMapping
from typing import Any, ClassVar

from loguru import logger
from strawberry.extensions import SchemaExtension

from pggateway.context.broker import ReleaseHandle, ResourceContextBroker
from pggateway.context.credentials import extract_bearer_token
from pggateway.context.settings import SessionSettingsResolver


class LifecycleState(enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    ACTIVE = "active"
    RELEASED = "released"


def _merge_into_context(context: Any, fields: dict[str, Any]) -> None:
    if isinstance(context, MutableMapping):
        context.update(fields)
        return
    for name, value in fields.items():
        setattr(context, name, value)


class RequestLifecycle:
    """IDLE -> ACQUIRING -> ACTIVE -> RELEASED for a single operation."""

    def __init__(self, broker: ResourceContextBroker, settings_resolver: SessionSettingsResolver):
        self.broker = broker
        self.settings_resolver = settings_resolver
        self.state = LifecycleState.IDLE
        self._release: ReleaseHandle | None = None

    @property
    def holds_connection(self) -> bool:
        return self._release is not None

    async def operation_resolved(self, context: Any, request: Any = None) -> None:
        """Acquire the connection and merge it into the GraphQL context."""
        if self.state is not LifecycleState.IDLE:
            raise RuntimeError(f"context already provisioned (state={self.state.value})")
        self.state = LifecycleState.ACQUIRING

        try:
            credential = extract_bearer_token(getattr(request, "headers", None))
            pg_settings = await self.settings_resolver.resolve(request)
            resource, self._release = await self.broker.acquire(credential, pg_settings)
            _merge_into_context(context, resource.as_context())
        except BaseException as exc:
            if isinstance(exc, Exception):
                logger.opt(exception=exc).error("Error occurred creating context")
            release, self._release = self._release, None
            if release is not None:
                await release.abort()
            self.state = LifecycleState.RELEASED
            raise

        self.state = LifecycleState.ACTIVE
        logger.debug("Request context active")

    async def response_sending(self) -> None:
        """Release the connection if one is held. Safe to call repeatedly."""
        release, self._release = self._release, None
        if release is not None:
            await release()
            logger.debug("Request context released")
        self.state = LifecycleState.RELEASED


class ResourceContextExtension(SchemaExtension):
    """Provision a database context for each GraphQL operation.

    Use `ResourceContextExtension.bind(broker, resolver)` to get a configured
    subclass for `strawberry.Schema(extensions=[...])`.
    """

    broker: ClassVar[ResourceContextBroker]
    settings_resolver: ClassVar[SessionSettingsResolver]

    lifecycle: RequestLifecycle | None = None

    @classmethod
    def bind(
        cls,
        broker: ResourceContextBroker,
        settings_resolver: SessionSettingsResolver,
    ) -> type["ResourceContextExtension"]:
        return type(cls.__name__, (cls,), {"broker": broker, "settings_resolver": settings_resolver})

    async def on_operation(self) -> AsyncIterator[None]:
        self.lifecycle = RequestLifecycle(self.broker, self.settings_resolver)
        try:
            yield
        finally:
            await self.lifecycle.response_sending()

    async def on_execute(self) -> AsyncIterator[None]:
        context = self.execution_context.context
        request = _get_request(context)
        await self.lifecycle.operation_resolved(context, request)
        yield


def _get_request(context: Any) -> Any:
    if isinstance(context, MutableMapping):
        return context.get("request")
    return getattr(context, "request", None)
