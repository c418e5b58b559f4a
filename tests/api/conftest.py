"""Fixtures for the HTTP route tests.

The app is built with create_app() and driven through httpx.ASGITransport.
The lifespan does not run, so the collaborators it would create are placed
on ``app.state`` and the DB session, driver registry, brute-force guard and
OIDC services are swapped through dependency_overrides.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
import pytest
from fastapi import FastAPI

from grc_idp.api.deps import get_oidc_authenticator, get_oidc_metadata
from grc_idp.auth.oidc.authenticator import OidcAuthenticator
from grc_idp.auth.oidc.metadata import OidcProviderMetadataService
from grc_idp.config import get_settings
from grc_idp.core.brute_force import BruteForceGuard, get_brute_force_guard
from grc_idp.database import get_db_session
from grc_idp.idp.registry import build_driver_registry, get_driver_registry
from grc_idp.main import create_app


@pytest.fixture
def app(settings, db_session, cache, audit, ldap_client, oidc_http) -> FastAPI:
    application = create_app()
    application.state.cache = cache
    application.state.audit = audit
    application.state.ldap_client = ldap_client

    async def _session() -> AsyncGenerator:
        yield db_session

    registry = build_driver_registry(settings, http=oidc_http, ldap_client=ldap_client)
    metadata = OidcProviderMetadataService(cache, oidc_http)
    guard = BruteForceGuard(settings, cache, audit)

    application.dependency_overrides.update(
        {
            get_settings: lambda: settings,
            get_db_session: _session,
            get_driver_registry: lambda: registry,
            get_brute_force_guard: lambda: guard,
            get_oidc_metadata: lambda: metadata,
            get_oidc_authenticator: lambda: OidcAuthenticator(
                db_session, audit, cache, metadata, http=oidc_http
            ),
        }
    )
    return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="https://grc.example.test") as c:
        yield c


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": "Bearer admin-token"}
