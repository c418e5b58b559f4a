"""SAML login: AuthnRequest issue and ACS assertion handling.

start_login() builds the redirect for a provider and binds it to a signed,
single-use RelayState token. authenticate() takes the posted SAMLResponse,
validates it, maps the assertion to a local user (JIT) and audits the
outcome. Everything a caller can act on leaves as ValidationFailed.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from grc_idp.auth.claims import ClaimSet, compose_name, first_non_empty, normalize_principal
from grc_idp.auth.jit import JitProvisioner, resolve_jit_settings
from grc_idp.auth.saml.authn_request import (
    BuiltAuthnRequest,
    SamlAuthnRequestBuilder,
    ServiceProviderConfig,
    new_request_id,
)
from grc_idp.auth.saml.response import SamlResponseValidator, ValidatedAssertion
from grc_idp.auth.saml.state import StateDescriptor, StateTokenFactory
from grc_idp.core.audit import AuditLogger
from grc_idp.core.errors import SamlLibraryError, ValidationFailed
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpDriverKey, IdpProvider
from grc_idp.models.user import User

log = structlog.get_logger(__name__)

EMAIL_CLAIMS = (
    "email",
    "mail",
    "emailaddress",
    "user.email",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
    "urn:oid:0.9.2342.19200300.100.1.3",
    "subject.name_id",
)
DISPLAY_NAME_CLAIMS = (
    "displayname",
    "cn",
    "name",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/displayname",
)
GIVEN_NAME_CLAIMS = ("givenname", "given_name")
SURNAME_CLAIMS = ("sn", "surname", "family_name")


def build_claims(assertion: ValidatedAssertion) -> ClaimSet:
    claims = ClaimSet()
    if assertion.response_issuer:
        claims.store("response.issuer", assertion.response_issuer)
    if assertion.assertion_issuer:
        claims.store("assertion.issuer", assertion.assertion_issuer)
    if assertion.name_id:
        claims.store("subject.name_id", assertion.name_id)

    for attribute in assertion.attributes:
        for value in attribute.values:
            claims.store(attribute.name, value)
    for attribute in assertion.attributes:
        if attribute.friendly_name is None:
            continue
        for value in attribute.values:
            claims.store(attribute.friendly_name, value)

    if assertion.session_index:
        claims.store("session.index", assertion.session_index)
    if assertion.assertion_id:
        claims.store("assertion.id", assertion.assertion_id)
    return claims


def extract_email(claims: ClaimSet) -> str | None:
    for key in EMAIL_CLAIMS:
        candidate = claims.get(key)
        if not isinstance(candidate, str):
            continue
        email = candidate.strip()
        if email and "@" in email:
            return email.lower()
    return None


def resolve_name(claims: ClaimSet, fallback_email: str) -> str:
    display = first_non_empty(claims.get, DISPLAY_NAME_CLAIMS)
    if display is not None:
        return display

    composed = compose_name(
        first_non_empty(claims.get, GIVEN_NAME_CLAIMS),
        first_non_empty(claims.get, SURNAME_CLAIMS),
    )
    if composed is not None:
        return composed

    principal = first_non_empty(claims.get, ("subject.name_id",))
    if principal is not None:
        return normalize_principal(principal)
    return fallback_email


class SamlAuthenticator:
    def __init__(
        self,
        db: AsyncSession,
        audit: AuditLogger,
        *,
        sp: ServiceProviderConfig,
        validator: SamlResponseValidator,
        state: StateTokenFactory | None = None,
        builder: SamlAuthnRequestBuilder | None = None,
        private_key: str | None = None,
        private_key_passphrase: str | None = None,
    ) -> None:
        self._db = db
        self._audit = audit
        self._sp = sp
        self._validator = validator
        self._state = state
        self._builder = builder or SamlAuthnRequestBuilder()
        self._private_key = private_key
        self._passphrase = private_key_passphrase

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def start_login(
        self,
        provider: IdpProvider,
        intended_path: str | None,
        context: RequestContext,
    ) -> tuple[BuiltAuthnRequest, StateDescriptor]:
        """AuthnRequest redirect whose RelayState is a fresh state token."""
        if self._state is None:
            raise SamlLibraryError("SAML state tokens are not configured.")

        request_id = new_request_id()
        descriptor = await self._state.issue(provider, request_id, intended_path, context)
        built = self._builder.build(
            self._sp,
            dict(provider.config or {}),
            descriptor.token,
            private_key=self._private_key,
            passphrase=self._passphrase,
            request_id=request_id,
        )
        log.info("auth.saml.login_started", provider_key=provider.key, request_id=request_id)
        return built, descriptor

    async def consume_relay_state(self, token: str, context: RequestContext) -> StateDescriptor:
        if self._state is None:
            raise SamlLibraryError("SAML state tokens are not configured.")
        return await self._state.validate(token, context)

    # ------------------------------------------------------------------
    # ACS
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        provider: IdpProvider,
        payload: dict[str, Any],
        context: RequestContext,
    ) -> User:
        if provider.driver.lower() != IdpDriverKey.SAML:
            raise ValidationFailed.single(
                "provider", "Provider driver does not support SAML flows."
            )

        config = dict(provider.config or {})
        expected_request_id = _string_or_none(payload.get("request_id"))

        try:
            assertion = await self._validated_assertion(config, payload, expected_request_id)
            claims = build_claims(assertion)
            jit = resolve_jit_settings(config)

            email = extract_email(claims)
            if email is None:
                log.info("auth.saml.email_not_found", available_claims=claims.keys())
                raise ValidationFailed.single("email", "SAML response missing email attribute.")

            user, created = await JitProvisioner(self._db).provision(
                jit,
                email=email,
                name=resolve_name(claims, email),
                lookup=claims.get,
            )
            if not created:
                await self._refresh_name(user, claims)

            await self._log_success(provider, user, context, claims)
            return user
        except ValidationFailed as exc:
            self._log_failure(provider, context, config, exc.errors)
            raise
        except Exception as exc:
            self._log_failure(provider, context, config, {"message": [str(exc)]})
            raise ValidationFailed.single(
                "SAMLResponse",
                "Unexpected error while processing SAML response.",
                status_code=401,
            ) from exc

    async def _validated_assertion(
        self,
        config: dict[str, Any],
        payload: dict[str, Any],
        expected_request_id: str | None,
    ) -> ValidatedAssertion:
        encoded = payload.get("SAMLResponse", payload.get("saml_response"))
        if not isinstance(encoded, str) or not encoded.strip():
            raise ValidationFailed.single("SAMLResponse", "SAMLResponse is required.")

        try:
            return await self._validator.validate(encoded, self._sp, config, expected_request_id)
        except SamlLibraryError as exc:
            raise ValidationFailed.single(
                "SAMLResponse", f"Failed to process SAML response: {exc}", status_code=401
            ) from exc

    async def _refresh_name(self, user: User, claims: ClaimSet) -> None:
        resolved = resolve_name(claims, user.email).strip()
        if not resolved or resolved.lower() == user.email.strip().lower():
            return
        if resolved.lower() == (user.name or "").strip().lower():
            return
        user.name = resolved
        await self._db.flush()

    async def _log_success(
        self,
        provider: IdpProvider,
        user: User,
        context: RequestContext,
        claims: ClaimSet,
    ) -> None:
        issuer = claims.get("response.issuer") or claims.get("assertion.issuer")
        await self._audit.log(
            action="auth.saml.login",
            entity_type="idp.provider",
            entity_id=str(provider.id) if provider.id else provider.key,
            actor_id=str(user.id),
            context=context,
            meta={
                "provider_key": provider.key,
                "issuer": issuer,
                "subject": claims.get("subject.name_id"),
            },
        )
        log.info("auth.saml.login_succeeded", provider_key=provider.key, user_id=str(user.id))

    @staticmethod
    def _log_failure(
        provider: IdpProvider,
        context: RequestContext,
        config: dict[str, Any],
        details: dict[str, list[str]],
    ) -> None:
        log.warning(
            "auth.saml.failed",
            provider=provider.key,
            issuer=config.get("entity_id"),
            ip=context.ip,
            ua=context.ua,
            details=details,
        )


def _string_or_none(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None
