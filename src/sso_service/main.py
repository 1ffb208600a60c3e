"""Pulse SSO Service

Main FastAPI application entry point.
Federated login (OpenID Connect) for Pulse users.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sso_service.api.routes import oidc
from sso_service.config.settings import Settings, get_settings
from sso_service.core.oidc.client import HttpOIDCClient
from sso_service.core.oidc.registry import ProviderRegistry
from sso_service.core.oidc.resolver import IdentityResolver
from sso_service.core.oidc.service import OIDCService
from sso_service.core.oidc.state import InMemoryStateStore, RedisStateStore, StateStore, run_state_cleanup
from sso_service.infrastructure.auth.token_issuer import TokenIssuer
from sso_service.infrastructure.db.database import Database
from sso_service.infrastructure.redis.client import RedisClient
from sso_service.sentry_config import configure_sentry

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_state_store(settings: Settings, redis_client: Optional[RedisClient]) -> StateStore:
    """Build the configured OIDC state backend"""
    backend = settings.oidc_state_backend.lower()
    if backend == "memory":
        return InMemoryStateStore(settings.oidc_state_ttl_minutes)
    if backend == "redis":
        if redis_client is None:
            raise ValueError("Redis state backend requires a Redis client")
        return RedisStateStore(redis_client.get_client(), settings.oidc_state_ttl_minutes)
    raise ValueError(f"Unknown OIDC_STATE_BACKEND: {settings.oidc_state_backend!r} (expected memory or redis)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    settings: Settings = app.state.settings

    # Startup
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")
    logger.info(f"Environment: {settings.environment}")

    # Fail fast on bad provider configuration
    registry = ProviderRegistry.from_json(settings.oidc_providers)
    if not len(registry):
        logger.warning("No OIDC providers configured")

    database = Database(settings.database_url, echo=settings.sql_echo)

    redis_client = None
    if settings.oidc_state_backend.lower() == "redis":
        redis_client = RedisClient(settings.redis_url)
        try:
            await redis_client.connect()
            logger.info("Redis connection established")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            await database.close()
            raise

    state_store = create_state_store(settings, redis_client)
    cleanup_task = None
    if isinstance(state_store, InMemoryStateStore):
        cleanup_task = asyncio.create_task(
            run_state_cleanup(state_store, settings.oidc_state_cleanup_interval_seconds)
        )

    oidc_service = OIDCService(
        registry=registry,
        client=HttpOIDCClient(timeout_seconds=settings.oidc_http_timeout_seconds),
        state_store=state_store,
        resolver=IdentityResolver(database.session_factory),
        base_url=settings.base_url,
        frontend_url=settings.frontend_url,
    )
    token_issuer = TokenIssuer(
        database.session_factory,
        secret_key=settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
        issuer=settings.jwt_issuer,
        access_token_expire_minutes=settings.access_token_expire_minutes,
        refresh_token_expire_days=settings.refresh_token_expire_days,
    )

    app.state.database = database
    app.state.redis_client = redis_client
    app.state.oidc_service = oidc_service
    app.state.token_issuer = token_issuer
    logger.info(f"OIDC login ready ({settings.oidc_state_backend} state backend)")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.service_name}")
    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    await oidc_service.close()
    if redis_client is not None:
        await redis_client.disconnect()
        logger.info("Redis connection closed")
    await database.close()
    logger.info("Database connections closed")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application

    Args:
        settings: Settings to use (defaults to environment configuration)
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Pulse SSO Service",
        version=settings.service_version,
        description="OpenID Connect federated login for Pulse",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    # Health check endpoint
    @app.get("/health")
    async def root_health_check(request: Request):
        """Root health check endpoint

        Reports Redis when it backs the OIDC state store; 503 if unreachable.
        """
        body = {
            "status": "healthy",
            "service": settings.service_name,
            "version": settings.service_version,
            "environment": settings.environment
        }
        redis_client: Optional[RedisClient] = getattr(request.app.state, "redis_client", None)
        if redis_client is not None:
            redis_ok = await redis_client.health_check()
            body["redis"] = "ok" if redis_ok else "unavailable"
            if not redis_ok:
                body["status"] = "degraded"
                return JSONResponse(status_code=503, content=body)
        return body

    @app.get("/")
    async def root():
        """Root endpoint with service information"""
        return {
            "service": settings.service_name,
            "version": settings.service_version,
            "description": "Pulse SSO Service",
            "docs": "/docs",
            "health": "/health"
        }

    # oidc.router already has the /auth/oidc prefix
    app.include_router(oidc.router, tags=["oidc"])

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Global exception handler for unhandled errors"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later."
            }
        )

    return app


settings = get_settings()
configure_logging(settings)
configure_sentry(settings)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "sso_service.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
