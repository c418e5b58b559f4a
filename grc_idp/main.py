"""ASGI entrypoint: ``uvicorn grc_idp.main:app``.

The lifespan wires the process-wide collaborators (database, cache, audit
logger, LDAP client, driver registry, brute-force guard) and keeps them on
``app.state`` or in their module singletons. Tests build the app with
``create_app()`` and swap those collaborators through dependency overrides.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from grc_idp.api.router import api_router
from grc_idp.auth.ldap.client import Ldap3Client
from grc_idp.cache.backend import get_cache_backend
from grc_idp.config import get_settings
from grc_idp.core.audit import AuditLogger
from grc_idp.core.brute_force import LoginLocked, init_brute_force_guard
from grc_idp.core.errors import ConfigurationError, ProviderLookupFailed, ValidationFailed
from grc_idp.database import close_db, get_session_factory, init_db
from grc_idp.idp.registry import init_driver_registry
from grc_idp.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()

    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        redis=bool(settings.redis_url),
    )

    init_db(settings)

    cache = get_cache_backend(settings)
    audit = AuditLogger(get_session_factory())
    ldap_client = Ldap3Client()

    app.state.cache = cache
    app.state.audit = audit
    app.state.ldap_client = ldap_client

    init_driver_registry(settings, ldap_client=ldap_client)
    init_brute_force_guard(settings, cache, audit)

    log.info("app.ready")
    yield

    await cache.close()
    await close_db()
    log.info("app.shutdown")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationFailed)
    async def validation_failed_handler(request: Request, exc: ValidationFailed) -> JSONResponse:
        code = "AUTH_FAILED" if exc.is_authentication_failure else "VALIDATION_FAILED"
        log.info(
            "app.validation_failed",
            path=request.url.path,
            code=code,
            fields=list(exc.errors),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "code": code, "errors": exc.errors},
        )

    @app.exception_handler(ProviderLookupFailed)
    async def provider_lookup_handler(request: Request, exc: ProviderLookupFailed) -> JSONResponse:
        content: dict = {"ok": False, "code": exc.code}
        if exc.meta:
            content["meta"] = exc.meta
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(LoginLocked)
    async def login_locked_handler(request: Request, exc: LoginLocked) -> JSONResponse:
        response = JSONResponse(
            status_code=exc.status_code,
            content={
                "ok": False,
                "code": "AUTH_LOCKED",
                "strategy": exc.strategy,
                "retry_after": exc.retry_after,
            },
            headers=exc.headers(),
        )
        if exc.cookie is not None:
            name, value, max_age = exc.cookie
            response.set_cookie(
                name,
                value,
                max_age=max_age,
                httponly=True,
                samesite="lax",
                secure=get_settings().is_prod,
            )
        return response

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        log.error("app.configuration_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"ok": False, "code": "CONFIGURATION_ERROR", "detail": str(exc)},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )


def create_app() -> FastAPI:
    """Build the app without running startup; the lifespan does that."""
    settings = get_settings()

    app = FastAPI(
        title="GRC Identity Federation",
        description="SAML 2.0, OpenID Connect / Entra ID and LDAP sign-in with JIT provisioning.",
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    register_exception_handlers(app)
    return app


app = create_app()
