"""Main API router - aggregates all sub-routers under /api."""

from __future__ import annotations

from fastapi import APIRouter

from grc_idp.api import auth_options, idp_providers, ldap, oidc, saml

api_router = APIRouter(prefix="/api")
api_router.include_router(auth_options.router)
api_router.include_router(ldap.router)
api_router.include_router(oidc.router)
api_router.include_router(saml.router)
api_router.include_router(idp_providers.router)
