"""Runtime lookup of IdP drivers by key."""

from __future__ import annotations

from collections.abc import Iterable

import httpx
import structlog

from grc_idp.auth.ldap.client import Ldap3Client, LdapClient
from grc_idp.auth.saml.sp_config import SamlServiceProviderConfigResolver
from grc_idp.config import Settings, get_settings
from grc_idp.idp.drivers.base import IdpDriver
from grc_idp.idp.drivers.entra import EntraIdpDriver
from grc_idp.idp.drivers.ldap import LdapIdpDriver
from grc_idp.idp.drivers.oidc import OidcIdpDriver
from grc_idp.idp.drivers.saml import SamlIdpDriver

log = structlog.get_logger(__name__)


def _normalize_key(key: str) -> str:
    return key.strip().lower()


class IdpDriverRegistry:
    def __init__(self, drivers: Iterable[IdpDriver]) -> None:
        self._drivers: dict[str, IdpDriver] = {
            _normalize_key(driver.key): driver for driver in drivers
        }

    def has(self, key: str) -> bool:
        return _normalize_key(key) in self._drivers

    def get(self, key: str) -> IdpDriver:
        try:
            return self._drivers[_normalize_key(key)]
        except KeyError:
            raise KeyError(f'Unknown IdP driver "{key}".') from None

    def keys(self) -> list[str]:
        return list(self._drivers)


def build_driver_registry(
    settings: Settings,
    *,
    http: httpx.AsyncClient | None = None,
    ldap_client: LdapClient | None = None,
) -> IdpDriverRegistry:
    return IdpDriverRegistry(
        [
            LdapIdpDriver(ldap_client or Ldap3Client()),
            OidcIdpDriver(http),
            EntraIdpDriver(http),
            SamlIdpDriver(SamlServiceProviderConfigResolver(settings), http=http),
        ]
    )


# Module-level singleton, initialized in the app lifespan
_registry: IdpDriverRegistry | None = None


def init_driver_registry(settings: Settings, **kwargs) -> IdpDriverRegistry:
    global _registry
    _registry = build_driver_registry(settings, **kwargs)
    log.info("idp.registry.initialized", drivers=_registry.keys())
    return _registry


def get_driver_registry() -> IdpDriverRegistry:
    """FastAPI dependency - return the driver registry."""
    if _registry is None:
        return init_driver_registry(get_settings())
    return _registry
