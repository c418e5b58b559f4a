"""Username / password login against an LDAP provider."""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from grc_idp.auth.claims import compose_name
from grc_idp.auth.jit import JitProvisioner, resolve_jit_settings
from grc_idp.auth.ldap.client import INVALID_CREDENTIALS, LdapClient
from grc_idp.auth.ldap.normalizer import LdapEntry
from grc_idp.core.audit import AuditLogger
from grc_idp.core.errors import LdapError, ValidationFailed
from grc_idp.core.input_validation import trimmed_string
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpDriverKey, IdpProvider
from grc_idp.models.user import User

log = structlog.get_logger(__name__)


def _attribute_name(config: dict[str, Any], key: str, default: str) -> str:
    configured = trimmed_string(config.get(key))
    return configured.lower() if configured else default


def resolve_email(config: dict[str, Any], entry: LdapEntry) -> str:
    email = entry.first(_attribute_name(config, "email_attribute", "mail"))
    if email is None:
        raise ValidationFailed.single("email", "LDAP entry missing required email attribute.")
    return email.lower()


def resolve_display_name(config: dict[str, Any], entry: LdapEntry, fallback_email: str) -> str:
    primary = entry.first(_attribute_name(config, "name_attribute", "cn"))
    if primary is not None:
        return primary
    display = entry.first("displayname")
    if display is not None:
        return display
    given, surname = entry.first("givenname"), entry.first("sn")
    if given and surname:
        return compose_name(given, surname) or fallback_email
    return fallback_email


class LdapAuthenticator:
    def __init__(self, db: AsyncSession, audit: AuditLogger, client: LdapClient) -> None:
        self._db = db
        self._audit = audit
        self._client = client

    async def authenticate(
        self,
        provider: IdpProvider,
        payload: dict[str, Any],
        context: RequestContext,
    ) -> User:
        if provider.driver.lower() != IdpDriverKey.LDAP:
            raise ValidationFailed.single(
                "provider", "Provider driver does not support LDAP authentication."
            )

        username, password = self._credentials(payload)
        config = dict(provider.config or {})
        entry = await self._lookup(provider, config, username, password)

        email = resolve_email(config, entry)
        user, created = await JitProvisioner(self._db).provision(
            resolve_jit_settings(config),
            email=email,
            name=resolve_display_name(config, entry, email),
            lookup=entry.values,
        )
        if not created:
            await self._refresh_name(user, config, entry)

        await self._audit.log(
            action="auth.ldap.login",
            entity_type="idp.provider",
            entity_id=str(provider.id) if provider.id else provider.key,
            actor_id=str(user.id),
            context=context,
            meta={"provider_key": provider.key, "username": username, "user_dn": entry.dn},
        )
        log.info("auth.ldap.login_succeeded", provider_key=provider.key, user_id=str(user.id))
        return user

    @staticmethod
    def _credentials(payload: dict[str, Any]) -> tuple[str, str]:
        username = trimmed_string(payload.get("username"))
        if username is None:
            raise ValidationFailed.single("username", "The username field is required.")
        password = payload.get("password")
        if not isinstance(password, str) or password == "":
            raise ValidationFailed.single("password", "The password field is required.")
        return username, password

    async def _lookup(
        self,
        provider: IdpProvider,
        config: dict[str, Any],
        username: str,
        password: str,
    ) -> LdapEntry:
        try:
            return await self._client.authenticate(config, username, password)
        except LdapError as exc:
            log.warning(
                "auth.ldap.failed",
                provider_id=str(provider.id),
                provider_key=provider.key,
                username=username,
                error=str(exc),
            )
            if str(exc) == INVALID_CREDENTIALS:
                raise ValidationFailed.single(
                    "username", "Invalid credentials.", status_code=401
                ) from exc
            raise ValidationFailed.single(
                "provider", "LDAP authentication failed due to provider misconfiguration."
            ) from exc

    async def _refresh_name(self, user: User, config: dict[str, Any], entry: LdapEntry) -> None:
        resolved = resolve_display_name(config, entry, user.email).strip()
        if not resolved or resolved == (user.name or "").strip():
            return
        user.name = resolved
        await self._db.flush()
