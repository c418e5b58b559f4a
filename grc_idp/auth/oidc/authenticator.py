"""OIDC / Entra ID login.

Accepts either an ``id_token`` from the client or an authorization ``code``
that is exchanged at the provider's token endpoint. The ID token is checked
against the provider JWKS (cached for 15 minutes), then issuer, audience,
expiry and nonce are verified explicitly before the user is provisioned.

Rejected tokens and unreachable provider endpoints fail with 401 on
``code``. A provider that is misconfigured (missing issuer or client
credentials, malformed discovery or JWKS) fails with 422 on ``provider``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import httpx
import jwt
import structlog
from jwt.exceptions import InvalidTokenError, PyJWKError, PyJWKSetError
from sqlalchemy.ext.asyncio import AsyncSession

from grc_idp.auth.claims import compose_name, first_non_empty, normalize_principal
from grc_idp.auth.jit import JitProvisioner, resolve_jit_settings
from grc_idp.auth.oidc.metadata import OidcProviderMetadataService, provider_config
from grc_idp.cache.backend import CacheBackend
from grc_idp.core.audit import AuditLogger
from grc_idp.core.errors import (
    OidcAuthenticationError,
    OidcProviderError,
    OidcProviderUnavailable,
    ValidationFailed,
)
from grc_idp.core.http import http_client, is_upstream_outage
from grc_idp.core.input_validation import trimmed_string
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpDriverKey, IdpProvider
from grc_idp.models.user import User

log = structlog.get_logger(__name__)

JWKS_CACHE_TTL = 900
EXPIRY_LEEWAY_SECONDS = 60

OIDC_DRIVERS = frozenset({IdpDriverKey.OIDC, IdpDriverKey.ENTRA})

EMAIL_CLAIMS = (
    "email",
    "preferred_username",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
    "upn",
    "unique_name",
)
_PRINCIPAL_EMAIL_CLAIMS = frozenset({"upn", "unique_name"})
DISPLAY_NAME_CLAIMS = (
    "name",
    "http://schemas.microsoft.com/identity/claims/displayname",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/displayname",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name",
)
GIVEN_NAME_CLAIMS = ("given_name", "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname")
FAMILY_NAME_CLAIMS = ("family_name", "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname")


def jwks_cache_key(provider: IdpProvider) -> str:
    return f"idp:{provider.id}:oidc:jwks"


def normalize_jwks(document: dict[str, Any]) -> dict[str, Any]:
    """Default ``alg`` to RS256 on RSA keys that omit it."""
    raw_keys = document.get("keys")
    if not isinstance(raw_keys, list):
        return dict(document)

    keys: list[dict[str, Any]] = []
    for key in raw_keys:
        if not isinstance(key, dict):
            continue
        key = dict(key)
        alg = key.get("alg")
        if not isinstance(alg, str) or not alg.strip():
            kty = key.get("kty")
            if isinstance(kty, str) and kty.strip().upper() == "RSA":
                key["alg"] = "RS256"
        keys.append(key)
    return {**document, "keys": keys}


def claim_value(claims: dict[str, Any], path: str) -> Any:
    """Exact key first, then a dotted path into nested objects."""
    if path in claims:
        return claims[path]
    current: Any = claims
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def extract_email(claims: dict[str, Any]) -> str | None:
    for key in EMAIL_CLAIMS:
        candidate = claims.get(key)
        if not isinstance(candidate, str) or not candidate.strip():
            continue
        candidate = candidate.strip()
        if key in _PRINCIPAL_EMAIL_CLAIMS and "@" not in candidate:
            continue
        return candidate.lower()
    return None


def _string_claim(claims: dict[str, Any]) -> Callable[[str], str | None]:
    def lookup(key: str) -> str | None:
        value = claims.get(key)
        return value if isinstance(value, str) else None

    return lookup


def resolve_name(claims: dict[str, Any], fallback_email: str) -> str:
    lookup = _string_claim(claims)
    display = first_non_empty(lookup, DISPLAY_NAME_CLAIMS)
    if display is not None:
        return display

    composed = compose_name(
        first_non_empty(lookup, GIVEN_NAME_CLAIMS),
        first_non_empty(lookup, FAMILY_NAME_CLAIMS),
    )
    if composed is not None:
        return composed

    principal = first_non_empty(lookup, ("unique_name", "upn"))
    if principal is not None:
        if "@" in principal:
            return principal
        return normalize_principal(principal)

    log.info(
        "auth.oidc.name_claims_missing",
        issuer=claims.get("iss"),
        subject=claims.get("sub"),
    )
    return fallback_email


class OidcAuthenticator:
    def __init__(
        self,
        db: AsyncSession,
        audit: AuditLogger,
        cache: CacheBackend,
        metadata: OidcProviderMetadataService,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._audit = audit
        self._cache = cache
        self._metadata = metadata
        self._http = http
        self._clock = clock

    async def authenticate(
        self,
        provider: IdpProvider,
        payload: dict[str, Any],
        context: RequestContext,
    ) -> User:
        config = provider_config(provider)
        if provider.driver.lower() not in OIDC_DRIVERS:
            raise ValidationFailed.single(
                "provider", "Provider driver does not support OIDC flows."
            )

        nonce = trimmed_string(payload.get("nonce"))

        try:
            discovery = await self._metadata.discovery(provider, config)
            id_token = await self._resolve_id_token(provider, config, discovery, payload)
            claims = await self._validate_id_token(provider, config, discovery, id_token, nonce)
            user = await self._provision(config, claims)

            await self._audit.log(
                action="auth.oidc.login",
                entity_type="idp.provider",
                entity_id=str(provider.id) if provider.id else provider.key,
                actor_id=str(user.id),
                context=context,
                meta={
                    "provider_key": provider.key,
                    "issuer": config.get("issuer"),
                    "subject": claims.get("sub"),
                    "email": claims.get("email"),
                },
            )
            log.info("auth.oidc.login_succeeded", provider_key=provider.key, user_id=str(user.id))
            return user
        except ValidationFailed as exc:
            await self._log_failure(provider, context, config, exc.errors)
            raise
        except (OidcAuthenticationError, OidcProviderUnavailable) as exc:
            await self._log_failure(provider, context, config, {"message": [str(exc)]})
            raise ValidationFailed.single("code", str(exc), status_code=401) from exc
        except OidcProviderError as exc:
            await self._log_failure(provider, context, config, {"provider": [str(exc)]})
            raise ValidationFailed.single("provider", str(exc)) from exc

    # ------------------------------------------------------------------
    # Token exchange
    # ------------------------------------------------------------------

    async def _resolve_id_token(
        self,
        provider: IdpProvider,
        config: dict[str, Any],
        discovery: dict[str, Any],
        payload: dict[str, Any],
    ) -> str:
        direct = trimmed_string(payload.get("id_token"))
        if direct is not None:
            return direct

        code = trimmed_string(payload.get("code"))
        if code is None:
            raise ValidationFailed.single("code", "Authorization code is required.")
        redirect_uri = trimmed_string(payload.get("redirect_uri"))
        if redirect_uri is None:
            raise ValidationFailed.single(
                "redirect_uri", "Redirect URI is required when exchanging a code."
            )

        token_endpoint = trimmed_string(discovery.get("token_endpoint"))
        if token_endpoint is None:
            raise OidcProviderError("Discovery document missing token endpoint.")
        client_id = trimmed_string(config.get("client_id"))
        if client_id is None:
            raise OidcProviderError("Provider client_id is not configured.")
        client_secret = trimmed_string(config.get("client_secret"))
        if client_secret is None:
            raise OidcProviderError("Provider client_secret is not configured.")

        scopes = dict.fromkeys(
            scope.strip()
            for scope in config.get("scopes") or []
            if isinstance(scope, str) and scope.strip()
        )
        scopes.setdefault("openid", None)

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "client_secret": client_secret,
            "scope": " ".join(scopes),
        }
        verifier = payload.get("code_verifier")
        if isinstance(verifier, str):
            form["code_verifier"] = verifier.strip()

        try:
            async with http_client(self._http) as client:
                response = await client.post(
                    token_endpoint, data=form, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as exc:
            log.warning(
                "auth.oidc.token_exchange_failed", provider_id=str(provider.id), error=str(exc)
            )
            raise OidcAuthenticationError("Token exchange failed.") from exc

        try:
            decoded = response.json()
        except ValueError:
            decoded = None
        if not isinstance(decoded, dict):
            raise OidcAuthenticationError("Token response malformed.")

        id_token = trimmed_string(decoded.get("id_token"))
        if id_token is None:
            message = (
                trimmed_string(decoded.get("error_description"))
                or trimmed_string(decoded.get("error"))
                or "Provider did not return an id_token."
            )
            raise OidcAuthenticationError(message)
        return id_token

    # ------------------------------------------------------------------
    # ID token validation
    # ------------------------------------------------------------------

    async def _validate_id_token(
        self,
        provider: IdpProvider,
        config: dict[str, Any],
        discovery: dict[str, Any],
        id_token: str,
        nonce: str | None,
    ) -> dict[str, Any]:
        jwks_uri = trimmed_string(discovery.get("jwks_uri"))
        if jwks_uri is None:
            raise OidcProviderError("Discovery document missing jwks_uri.")

        key_set = await self._jwks(provider, jwks_uri)
        claims = self._decode(provider, id_token, key_set)

        issuer = trimmed_string(config.get("issuer"))
        if issuer is None:
            raise OidcProviderError("Provider issuer is not configured.")
        iss = claims.get("iss")
        if not isinstance(iss, str) or not iss.strip() or iss != issuer:
            raise OidcAuthenticationError("Issuer mismatch.")

        client_id = trimmed_string(config.get("client_id"))
        if client_id is None:
            raise OidcProviderError("Provider client_id is not configured.")
        aud = claims.get("aud")
        if isinstance(aud, list):
            audience_ok = client_id in aud
        else:
            audience_ok = isinstance(aud, str) and aud == client_id
        if not audience_ok:
            raise OidcAuthenticationError("Audience mismatch.")

        exp = claims.get("exp")
        expires_at = int(exp) if isinstance(exp, (int, float)) and not isinstance(exp, bool) else 0
        if expires_at and expires_at < int(self._clock()) - EXPIRY_LEEWAY_SECONDS:
            raise OidcAuthenticationError("ID token expired.")

        if nonce is not None and claims.get("nonce") != nonce:
            raise OidcAuthenticationError("Nonce mismatch.")

        return claims

    async def _jwks(self, provider: IdpProvider, jwks_uri: str) -> jwt.PyJWKSet:
        cache_key = jwks_cache_key(provider)
        cached = await self._cache.get(cache_key)
        if isinstance(cached, dict) and cached:
            return self._key_set(cached)

        try:
            async with http_client(self._http) as client:
                response = await client.get(jwks_uri, headers={"Accept": "application/json"})
                response.raise_for_status()
        except httpx.HTTPError as exc:
            log.error("auth.oidc.jwks_fetch_failed", provider_id=str(provider.id), error=str(exc))
            error = OidcProviderUnavailable if is_upstream_outage(exc) else OidcProviderError
            raise error("Unable to fetch JWKS.") from exc

        try:
            document = response.json()
        except ValueError:
            document = None
        if not isinstance(document, dict):
            raise OidcProviderError("JWKS response malformed.")

        normalized = normalize_jwks(document)
        await self._cache.set(cache_key, normalized, JWKS_CACHE_TTL)
        log.info("auth.oidc.jwks_refreshed", provider_id=str(provider.id))
        return self._key_set(normalized)

    @staticmethod
    def _key_set(document: dict[str, Any]) -> jwt.PyJWKSet:
        keys = document.get("keys")
        if not isinstance(keys, list) or not keys:
            raise OidcProviderError("Provider JWKS is empty.")
        try:
            return jwt.PyJWKSet.from_dict(document)
        except (PyJWKSetError, PyJWKError) as exc:
            raise OidcProviderError("JWKS response malformed.") from exc

    def _decode(
        self, provider: IdpProvider, id_token: str, key_set: jwt.PyJWKSet
    ) -> dict[str, Any]:
        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
        except InvalidTokenError as exc:
            log.warning("auth.oidc.id_token_invalid", provider_id=str(provider.id), error=str(exc))
            raise OidcAuthenticationError("Unable to validate ID token.") from exc

        candidates = [key for key in key_set.keys if kid is None or key.key_id == kid]
        if not candidates:
            candidates = list(key_set.keys)

        last_error: Exception | None = None
        for key in candidates:
            algorithm = key.algorithm_name
            if algorithm.upper().startswith("HS"):
                continue
            try:
                return jwt.decode(
                    id_token,
                    key.key,
                    algorithms=[algorithm],
                    options={
                        "verify_signature": True,
                        "verify_exp": False,
                        "verify_aud": False,
                        "verify_iss": False,
                    },
                    leeway=EXPIRY_LEEWAY_SECONDS,
                )
            except InvalidTokenError as exc:
                last_error = exc

        log.warning(
            "auth.oidc.id_token_invalid",
            provider_id=str(provider.id),
            error=str(last_error) if last_error else "no usable key",
        )
        raise OidcAuthenticationError("Unable to validate ID token.")

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def _provision(self, config: dict[str, Any], claims: dict[str, Any]) -> User:
        email = extract_email(claims)
        if email is None:
            log.info(
                "auth.oidc.email_not_found",
                issuer=claims.get("iss"),
                subject=claims.get("sub"),
                available_claims=sorted(claims),
            )
            raise ValidationFailed.single("email", "OIDC response missing email claim.")

        user, created = await JitProvisioner(self._db).provision(
            resolve_jit_settings(config),
            email=email,
            name=resolve_name(claims, email),
            lookup=lambda path: claim_value(claims, path),
        )
        if not created:
            await self._refresh_name(user, claims)
        return user

    async def _refresh_name(self, user: User, claims: dict[str, Any]) -> None:
        resolved = resolve_name(claims, user.email).strip()
        if resolved.lower() == user.email.strip().lower():
            return
        if resolved == (user.name or "").strip():
            return
        user.name = resolved
        await self._db.flush()

    async def _log_failure(
        self,
        provider: IdpProvider,
        context: RequestContext,
        config: dict[str, Any],
        errors: dict[str, list[str]],
    ) -> None:
        log.warning("auth.oidc.failed", provider=provider.key, details=errors)
        await self._audit.log(
            action="auth.oidc.login.failed",
            entity_type="idp.provider",
            entity_id=str(provider.id) if provider.id else provider.key,
            context=context,
            meta={
                "provider_key": provider.key,
                "issuer": config.get("issuer"),
                "validation": errors,
            },
        )
