"""Cached OIDC discovery documents.

Discovery is fetched from ``{issuer}/.well-known/openid-configuration`` and
kept for an hour under ``idp:{provider_id}:oidc:discovery``. A ``_cached_at``
marker distinguishes a document we stored from anything else at that key.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from grc_idp.cache.backend import CacheBackend
from grc_idp.core.errors import OidcProviderError, OidcProviderUnavailable
from grc_idp.core.http import http_client, is_upstream_outage
from grc_idp.models.idp_provider import IdpProvider

log = structlog.get_logger(__name__)

DISCOVERY_CACHE_TTL = 3600


def discovery_cache_key(provider: IdpProvider) -> str:
    return f"idp:{provider.id}:oidc:discovery"


def provider_config(provider: IdpProvider) -> dict[str, Any]:
    config = provider.config
    if isinstance(config, dict):
        return dict(config)
    return {}


class OidcProviderMetadataService:
    def __init__(self, cache: CacheBackend, http: httpx.AsyncClient | None = None) -> None:
        self._cache = cache
        self._http = http

    async def discovery(self, provider: IdpProvider, config: dict[str, Any]) -> dict[str, Any]:
        issuer = config.get("issuer")
        if not isinstance(issuer, str) or not issuer.strip():
            raise OidcProviderError("Provider issuer is not configured.")

        cache_key = discovery_cache_key(provider)
        cached = await self._cache.get(cache_key)
        if isinstance(cached, dict) and "_cached_at" in cached:
            return cached

        endpoint = f"{issuer.strip().rstrip('/')}/.well-known/openid-configuration"
        try:
            async with http_client(self._http) as client:
                response = await client.get(endpoint, headers={"Accept": "application/json"})
                response.raise_for_status()
        except httpx.HTTPError as exc:
            log.error(
                "auth.oidc.discovery_failed",
                provider_id=str(provider.id),
                endpoint=endpoint,
                error=str(exc),
            )
            error = OidcProviderUnavailable if is_upstream_outage(exc) else OidcProviderError
            raise error("Unable to retrieve discovery document.") from exc

        try:
            document = response.json()
        except ValueError:
            document = None
        if not isinstance(document, dict):
            raise OidcProviderError("Discovery document response is invalid.")

        document["_cached_at"] = int(time.time())
        await self._cache.set(cache_key, document, DISCOVERY_CACHE_TTL)
        log.debug("auth.oidc.discovery_cached", provider_id=str(provider.id))
        return document

    async def authorization_endpoint(self, provider: IdpProvider, config: dict[str, Any]) -> str:
        document = await self.discovery(provider, config)
        endpoint = document.get("authorization_endpoint")
        if not isinstance(endpoint, str) or not endpoint.strip():
            raise OidcProviderError("Discovery document missing authorization_endpoint.")
        return endpoint.strip()
