"""
FastAPI + Strawberry GraphQL gateway over PostgreSQL.

Every GraphQL operation runs on its own pooled connection, with the caller's
role and session settings applied from the bearer token and the configured
session settings.

Supports:
- Dev mode: SQLite, debug enabled
- Prod mode: PostgreSQL via DATABASE_URL

Usage:
    # Development (default)
    uvicorn pggateway.main:create_app --factory --reload

    # Production
    pggateway --mode prod --host 0.0.0.0 --port 5000
"""
import argparse
import os
import sys
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypedDict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from pggateway.context import BrokerOptions, ResourceContextBroker, SessionSettingsResolver
from pggateway.context.settings import SettingsCallback
from pggateway.core.config import Settings, get_settings
from pggateway.core.database import ConnectionPool, EnginePool, create_engine
from pggateway.core.logging import configure_logging
from pggateway.graphql.schema import build_graphql_router, build_schema

parser = argparse.ArgumentParser(description="PostgreSQL GraphQL Gateway")
parser.add_argument(
    "--mode",
    choices=["dev", "prod"],
    default=os.getenv("APP_MODE", "dev"),
    help="Running mode: dev (SQLite) or prod (PostgreSQL)"
)
parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
parser.add_argument(
    "--port",
    type=int,
    default=int(os.getenv("PORT", "5000")),
    help="Port to bind to (default: $PORT or 5000)"
)


class State(TypedDict):
    """Lifespan state."""
    pass


def build_settings_resolver(
    config: Settings,
    pg_settings: Mapping[str, Any] | SettingsCallback | None = None,
) -> SessionSettingsResolver:
    """An explicit source wins over PG_SETTINGS_HOOK, which wins over PG_SETTINGS."""
    if pg_settings is not None:
        return SessionSettingsResolver(pg_settings)
    if config.PG_SETTINGS_HOOK is not None:
        return SessionSettingsResolver(config.PG_SETTINGS_HOOK)
    return SessionSettingsResolver(config.PG_SETTINGS)


def create_app(
    config: Settings | None = None,
    pool: ConnectionPool | None = None,
    pg_settings: Mapping[str, Any] | SettingsCallback | None = None,
) -> FastAPI:
    """Build the application.

    Without `config` the settings for $APP_MODE are loaded. Without an
    explicit `pool` the app owns a SQLAlchemy engine: it checks the database
    is reachable on startup and disposes the engine on shutdown.
    """
    if config is None:
        config = get_settings()

    engine_pool = None
    if pool is None:
        engine_pool = EnginePool(create_engine(config))
        pool = engine_pool

    broker = ResourceContextBroker(pool, BrokerOptions.from_settings(config))
    schema = build_schema(broker, build_settings_resolver(config, pg_settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[State]:
        """Startup and shutdown logic."""
        configure_logging(config.LOG_LEVEL)
        if engine_pool is not None:
            try:
                await engine_pool.verify()
            except Exception:
                logger.exception("[{}] Database is unreachable", config.ENV_MODE)
                raise

        logger.info("[{}] Server starting...", config.ENV_MODE)
        logger.info("[{}] Database: {}", config.ENV_MODE, config.async_db_url.split("@")[-1])
        logger.info("[{}] Schemas: {}", config.ENV_MODE, ", ".join(config.schema_names))

        yield {}

        # Shutdown
        if engine_pool is not None:
            await engine_pool.dispose()
        logger.info("[{}] Server stopped", config.ENV_MODE)

    app = FastAPI(
        title=config.APP_NAME,
        description="GraphQL API over PostgreSQL with per-request authenticated connections",
        version=config.APP_VERSION,
        lifespan=lifespan,
        debug=config.DEBUG,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if config.is_dev else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(build_graphql_router(schema, config.schema_names), prefix="/graphql")

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "mode": config.ENV_MODE,
            "version": config.APP_VERSION,
        }

    return app


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    args = parser.parse_args(argv)
    os.environ["APP_MODE"] = args.mode
    try:
        config = get_settings(args.mode)
        configure_logging(config.LOG_LEVEL)
        if config.is_dev:
            uvicorn.run(
                "pggateway.main:create_app",
                factory=True,
                host=args.host,
                port=args.port,
                reload=True,
            )
        else:
            uvicorn.run(create_app(config), host=args.host, port=args.port)
    except Exception:
        logger.exception("Server failed to start")
        sys.exit(1)


# Allow running as module: python -m pggateway.main --mode prod
if __name__ == "__main__":
    main()
