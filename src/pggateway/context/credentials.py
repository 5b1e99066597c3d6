"""Bearer token extraction from request headers."""
import re
from collections.abc import Mapping

AUTHORIZATION_BEARER_RE = re.compile(r"^\s*bearer\s+([a-z0-9\-._~+/]+=*)\s*$", re.IGNORECASE)


def _authorization_header(headers: Mapping[str, str]) -> str | None:
    value = headers.get("authorization")
    if value is not None:
        return value
    # Plain dicts are case-sensitive; Starlette's Headers already are not.
    for key, candidate in headers.items():
        if key.lower() == "authorization":
            return candidate
    return None


def extract_bearer_token(headers: Mapping[str, str] | None) -> str | None:
    """Return the token from `Authorization: Bearer <token>`, or None.

    A missing or malformed header means an anonymous caller, not an error.
    """
    if not headers:
        return None
    value = _authorization_header(headers)
    if not isinstance(value, str):
        return None
    match = AUTHORIZATION_BEARER_RE.match(value)
    return match.group(1) if match else None
