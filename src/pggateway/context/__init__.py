"""Per-request database context: credential, session settings, connection."""
from pggateway.context.broker import BrokerOptions, ReleaseHandle, ResourceContext, ResourceContextBroker
from pggateway.context.credentials import extract_bearer_token
from pggateway.context.exceptions import (
    AcquisitionError,
    CredentialRejectedError,
    ResourceContextError,
    SettingsApplicationError,
    SettingsResolutionError,
)
from pggateway.context.lifecycle import LifecycleState, RequestLifecycle, ResourceContextExtension
from pggateway.context.settings import SessionSettingsResolver

__all__ = [
    "AcquisitionError",
    "BrokerOptions",
    "CredentialRejectedError",
    "LifecycleState",
    "ReleaseHandle",
    "RequestLifecycle",
    "ResourceContext",
    "ResourceContextBroker",
    "ResourceContextError",
    "ResourceContextExtension",
    "SessionSettingsResolver",
    "SettingsApplicationError",
    "SettingsResolutionError",
    "extract_bearer_token",
]
