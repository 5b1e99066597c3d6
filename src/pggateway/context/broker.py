"""
Acquire one connection per request with the caller's identity applied.

The broker turns (credential, session settings) into a connection that is
safe to hand to query execution:

1. Verify the bearer token and fold its claims into the session settings.
2. Check a connection out of the pool.
3. Open a transaction and apply the settings with transaction-local
   `set_config`, so they disappear when the transaction ends.

If step 3 fails the connection goes straight back to the pool before the
error is raised. On success the caller gets a `ResourceContext` and a
`ReleaseHandle`; awaiting the handle ends the transaction and checks the
connection back in.
"""
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import anyio
from jose import jwt
from jose.exceptions import JWTError
from loguru import logger
from sqlalchemy import text

from pggateway.context.exceptions import (
    AcquisitionError,
    CredentialRejectedError,
    SettingsApplicationError,
)
from pggateway.core.database import ConnectionPool, is_postgres

SET_CONFIG = text("select set_config(:key, :value, true)")

# Key under which applied settings are recorded on `connection.info`.
SETTINGS_INFO_KEY = "pggateway.settings"


@dataclass(frozen=True)
class BrokerOptions:
    """Credential verification and role defaults."""

    jwt_secret: str
    jwt_algorithms: list[str] = field(default_factory=lambda: ["HS256"])
    jwt_audiences: list[str] = field(default_factory=list)
    jwt_role_path: list[str] = field(default_factory=lambda: ["role"])
    default_role: str | None = None

    @classmethod
    def from_settings(cls, settings) -> "BrokerOptions":
        return cls(
            jwt_secret=settings.JWT_SECRET,
            jwt_algorithms=settings.jwt_algorithms,
            jwt_audiences=settings.jwt_audiences,
            jwt_role_path=settings.jwt_role_path,
            default_role=settings.DEFAULT_ROLE,
        )


@dataclass(frozen=True)
class ResourceContext:
    """Connection plus the identity applied to it, for one request."""

    pg_client: Any
    jwt_token: str | None
    pg_settings: dict[str, str]
    jwt_claims: dict[str, Any] | None = None
    pg_role: str | None = None
    # Sibling resolvers run concurrently; one statement at a time per connection.
    pg_lock: anyio.Lock = field(default_factory=anyio.Lock)

    def as_context(self) -> dict[str, Any]:
        return {
            "pg_client": self.pg_client,
            "jwt_token": self.jwt_token,
            "jwt_claims": self.jwt_claims,
            "pg_settings": self.pg_settings,
            "pg_role": self.pg_role,
            "pg_lock": self.pg_lock,
        }


def _setting_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _dig(claims: Mapping[str, Any], path: list[str]) -> Any:
    value: Any = claims
    for part in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


class ReleaseHandle:
    """Single-use release of one checked-out connection.

    Awaiting the handle commits the connection's transaction (clearing the
    transaction-local settings) and returns it to the pool; `abort()` does
    the same with a rollback. Only the first of these calls does anything.
    Failures are logged and never raised.
    """

    def __init__(self, pool: ConnectionPool, connection: Any):
        self._pool = pool
        self._connection = connection
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def __call__(self) -> None:
        await self._release(commit=True)

    async def abort(self) -> None:
        await self._release(commit=False)

    async def _release(self, commit: bool) -> None:
        if self._released:
            return
        # Flip first so a concurrent second call cannot release twice.
        self._released = True
        connection, self._connection = self._connection, None

        with anyio.CancelScope(shield=True):
            await _end_transaction(connection, commit)
            try:
                await self._pool.release(connection)
            except Exception:
                logger.opt(exception=True).warning("Failed to return connection to the pool")


async def _end_transaction(connection: Any, commit: bool) -> None:
    try:
        connection.info.pop(SETTINGS_INFO_KEY, None)
    except Exception:
        logger.opt(exception=True).warning("Could not clear recorded settings while releasing connection")

    try:
        if not connection.in_transaction():
            return
        if commit:
            await connection.commit()
            return
    except Exception:
        logger.opt(exception=True).warning("Commit failed while releasing connection, rolling back")

    try:
        await connection.rollback()
    except Exception:
        logger.opt(exception=True).warning("Rollback failed while releasing connection")


class ResourceContextBroker:
    """Hands out `(ResourceContext, ReleaseHandle)` pairs from a pool."""

    def __init__(self, pool: ConnectionPool, options: BrokerOptions):
        self.pool = pool
        self.options = options

    def verify_token(self, token: str) -> dict[str, Any]:
        audiences = self.options.jwt_audiences
        try:
            claims = jwt.decode(
                token,
                self.options.jwt_secret,
                algorithms=self.options.jwt_algorithms,
                audience=audiences[0] if len(audiences) == 1 else None,
                options={"verify_aud": len(audiences) == 1},
            )
        except JWTError as exc:
            raise CredentialRejectedError(f"invalid bearer token: {exc}") from exc

        if len(audiences) > 1:
            aud = claims.get("aud")
            token_audiences = [aud] if isinstance(aud, str) else list(aud or [])
            if not set(token_audiences) & set(audiences):
                raise CredentialRejectedError("invalid bearer token: audience not accepted")
        return claims

    def session_settings(
        self,
        credential: str | None,
        settings: Mapping[str, Any] | None,
    ) -> tuple[dict[str, str], dict[str, Any] | None, str | None]:
        """Merge resolved settings, role and JWT claims into set_config pairs."""
        claims = self.verify_token(credential) if credential else None

        merged = {
            str(key): _setting_value(value)
            for key, value in (settings or {}).items()
            if value is not None
        }

        role = _dig(claims, self.options.jwt_role_path) if claims else None
        if role is None:
            role = merged.get("role", self.options.default_role)
        if role is not None:
            merged["role"] = str(role)

        for name, value in (claims or {}).items():
            if value is not None:
                merged[f"jwt.claims.{name}"] = _setting_value(value)

        return merged, claims, role

    async def acquire(
        self,
        credential: str | None,
        settings: Mapping[str, Any] | None,
    ) -> tuple[ResourceContext, ReleaseHandle]:
        pg_settings, claims, role = self.session_settings(credential, settings)

        try:
            connection = await self.pool.acquire()
        except Exception as exc:
            raise AcquisitionError(f"could not acquire a database connection: {exc}") from exc

        release = ReleaseHandle(self.pool, connection)
        try:
            await self._apply(connection, pg_settings)
        except Exception as exc:
            await release.abort()
            raise SettingsApplicationError(f"could not apply session settings: {exc}") from exc
        except BaseException:
            await release.abort()
            raise

        logger.debug("Acquired connection with role={} and {} setting(s)", role, len(pg_settings))
        context = ResourceContext(
            pg_client=connection,
            jwt_token=credential,
            pg_settings=pg_settings,
            jwt_claims=claims,
            pg_role=role,
        )
        return context, release

    @staticmethod
    async def _apply(connection: Any, pg_settings: dict[str, str]) -> None:
        await connection.begin()
        if is_postgres(connection):
            for key, value in pg_settings.items():
                await connection.execute(SET_CONFIG, {"key": key, "value": value})
        connection.info[SETTINGS_INFO_KEY] = dict(pg_settings)
