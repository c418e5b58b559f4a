"""Request-scoped wiring for the federation routes.

Long-lived collaborators (cache, audit logger, LDAP client) are created in
the app lifespan and stored on ``app.state``. Authenticators and services
are cheap and built per request around the request's DB session.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from grc_idp.auth.ldap.authenticator import LdapAuthenticator
from grc_idp.auth.ldap.client import LdapClient
from grc_idp.auth.oidc.authenticator import OidcAuthenticator
from grc_idp.auth.oidc.authorize import OidcAuthorizationService
from grc_idp.auth.oidc.metadata import OidcProviderMetadataService
from grc_idp.auth.oidc.state_store import OidcStateStore
from grc_idp.auth.saml.authenticator import SamlAuthenticator
from grc_idp.auth.saml.response import SamlResponseValidator
from grc_idp.auth.saml.sp_config import SamlServiceProviderConfigResolver
from grc_idp.auth.saml.state import StateTokenFactory
from grc_idp.cache.backend import CacheBackend
from grc_idp.config import Settings, get_settings
from grc_idp.core.audit import AuditLogger
from grc_idp.core.errors import ProviderLookupFailed
from grc_idp.database import get_db_session
from grc_idp.idp.registry import IdpDriverRegistry, get_driver_registry
from grc_idp.models.idp_provider import IdpProvider
from grc_idp.models.user import User
from grc_idp.services.idp_providers import IdpProviderService
from grc_idp.telemetry.logging import bind_provider_context

_MAX_IDENTIFIER_LENGTH = 160


def get_cache(request: Request) -> CacheBackend:
    return request.app.state.cache


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit


def get_ldap_client(request: Request) -> LdapClient:
    return request.app.state.ldap_client


def get_sp_resolver(settings: Settings = Depends(get_settings)) -> SamlServiceProviderConfigResolver:
    return SamlServiceProviderConfigResolver(settings)


def get_provider_service(
    db: AsyncSession = Depends(get_db_session),
    drivers: IdpDriverRegistry = Depends(get_driver_registry),
    audit: AuditLogger = Depends(get_audit_logger),
) -> IdpProviderService:
    return IdpProviderService(db, drivers, audit)


def get_saml_state_factory(
    cache: CacheBackend = Depends(get_cache),
    sp_resolver: SamlServiceProviderConfigResolver = Depends(get_sp_resolver),
    settings: Settings = Depends(get_settings),
) -> StateTokenFactory:
    return StateTokenFactory.from_settings(cache, settings, sp_resolver.resolve().acs_url)


def get_saml_authenticator(
    db: AsyncSession = Depends(get_db_session),
    audit: AuditLogger = Depends(get_audit_logger),
    state: StateTokenFactory = Depends(get_saml_state_factory),
    sp_resolver: SamlServiceProviderConfigResolver = Depends(get_sp_resolver),
    settings: Settings = Depends(get_settings),
) -> SamlAuthenticator:
    private_key = sp_resolver.private_key()
    passphrase = sp_resolver.private_key_passphrase()
    return SamlAuthenticator(
        db,
        audit,
        sp=sp_resolver.resolve(),
        validator=SamlResponseValidator(
            require_signed_assertion=settings.saml_require_signed_assertion,
            private_key=private_key,
            private_key_passphrase=passphrase,
        ),
        state=state,
        private_key=private_key,
        private_key_passphrase=passphrase,
    )


def get_oidc_metadata(cache: CacheBackend = Depends(get_cache)) -> OidcProviderMetadataService:
    return OidcProviderMetadataService(cache)


def get_oidc_state_store(cache: CacheBackend = Depends(get_cache)) -> OidcStateStore:
    return OidcStateStore(cache)


def get_oidc_authorization(
    metadata: OidcProviderMetadataService = Depends(get_oidc_metadata),
    state_store: OidcStateStore = Depends(get_oidc_state_store),
    settings: Settings = Depends(get_settings),
) -> OidcAuthorizationService:
    return OidcAuthorizationService(metadata, state_store, f"{settings.base_url}/auth/callback")


def get_oidc_authenticator(
    db: AsyncSession = Depends(get_db_session),
    audit: AuditLogger = Depends(get_audit_logger),
    cache: CacheBackend = Depends(get_cache),
    metadata: OidcProviderMetadataService = Depends(get_oidc_metadata),
) -> OidcAuthenticator:
    return OidcAuthenticator(db, audit, cache, metadata)


def get_ldap_authenticator(
    db: AsyncSession = Depends(get_db_session),
    audit: AuditLogger = Depends(get_audit_logger),
    client: LdapClient = Depends(get_ldap_client),
) -> LdapAuthenticator:
    return LdapAuthenticator(db, audit, client)


async def resolve_login_provider(
    service: IdpProviderService,
    identifier: str | None,
    drivers: frozenset[str] | tuple[str, ...],
) -> IdpProvider:
    """Find an enabled provider of one of ``drivers`` or raise ProviderLookupFailed."""
    if not await service.persistence_available():
        raise ProviderLookupFailed("IDP_PERSISTENCE_DISABLED", 409)

    identifier = (identifier or "").strip()
    if not identifier or len(identifier) > _MAX_IDENTIFIER_LENGTH:
        raise ProviderLookupFailed("IDP_PROVIDER_INVALID", 422, {"fields": ["provider"]})

    provider = await service.find_by_id_or_key(identifier)
    if provider is None:
        raise ProviderLookupFailed("IDP_PROVIDER_NOT_FOUND", 404, {"provider": identifier})
    if not provider.enabled:
        raise ProviderLookupFailed("IDP_PROVIDER_DISABLED", 403)
    if provider.driver.lower() not in drivers:
        raise ProviderLookupFailed("IDP_PROVIDER_UNSUPPORTED", 422)

    bind_provider_context(provider.key, provider.driver)
    return provider


def wants_json(request: Request) -> bool:
    """True when the caller asked for a JSON body instead of a browser redirect."""
    accept = request.headers.get("accept", "")
    return "application/json" in accept or request.query_params.get("format") == "json"


def user_payload(user: User) -> dict[str, Any]:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "roles": sorted(role.id for role in user.roles),
    }
