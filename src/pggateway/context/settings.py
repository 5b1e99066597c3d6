"""Session settings, either fixed at startup or computed per request."""
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Union

from loguru import logger

from pggateway.context.exceptions import SettingsResolutionError

SettingsCallback = Callable[[Any], Union[Mapping[str, Any], None, Awaitable[Union[Mapping[str, Any], None]]]]


class SessionSettingsResolver:
    """Produce the session settings for one request.

    `source` is either a static mapping (or None) or a callable taking the raw
    request. The callable may be a coroutine function and may do I/O; any
    error it raises is wrapped in `SettingsResolutionError`.
    """

    def __init__(self, source: Mapping[str, Any] | SettingsCallback | None = None):
        if source is not None and not callable(source) and not isinstance(source, Mapping):
            raise TypeError(f"session settings must be a mapping or a callable, got {type(source).__name__}")
        self.source = source

    @property
    def is_dynamic(self) -> bool:
        return callable(self.source)

    async def resolve(self, request: Any) -> dict[str, Any] | None:
        if not self.is_dynamic:
            return dict(self.source) if self.source is not None else None

        try:
            result = self.source(request)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.debug("Session settings callback failed: {}", exc)
            raise SettingsResolutionError(f"failed to resolve session settings: {exc}") from exc

        if result is None:
            return None
        if not isinstance(result, Mapping):
            raise SettingsResolutionError(
                f"session settings callback returned {type(result).__name__}, expected a mapping"
            )
        return dict(result)
