"""Errors raised while building a request's database context.

All of them surface to the client as GraphQL errors; none is fatal to the
process. Release-time failures are never raised, only logged.
"""


class ResourceContextError(Exception):
    """Base class for context construction failures."""


class CredentialRejectedError(ResourceContextError):
    """A well-formed bearer token failed verification."""


class SettingsResolutionError(ResourceContextError):
    """The session settings callback failed. No connection was acquired."""


class AcquisitionError(ResourceContextError):
    """The pool could not supply a connection."""


class SettingsApplicationError(ResourceContextError):
    """Applying identity/settings to an acquired connection failed.

    The connection has already been returned to the pool when this is raised.
    """
