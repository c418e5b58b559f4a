"""Route a federated login to the authenticator for the provider's driver."""

from __future__ import annotations

from typing import Any

from grc_idp.auth.ldap.authenticator import LdapAuthenticator
from grc_idp.auth.oidc.authenticator import OidcAuthenticator
from grc_idp.auth.saml.authenticator import SamlAuthenticator
from grc_idp.core.errors import ValidationFailed
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpDriverKey, IdpProvider
from grc_idp.models.user import User


def _unavailable() -> ValidationFailed:
    return ValidationFailed.single("provider", "Provider driver is not available for this login.")


async def authenticate_with_provider(
    provider: IdpProvider,
    payload: dict[str, Any],
    context: RequestContext,
    *,
    saml: SamlAuthenticator | None = None,
    oidc: OidcAuthenticator | None = None,
    ldap: LdapAuthenticator | None = None,
) -> User:
    """Authenticate ``payload`` against ``provider``.

    Only the authenticators passed in are reachable, so a route wired for
    LDAP cannot be used to drive a SAML login.
    """
    try:
        driver = IdpDriverKey(provider.driver.strip().lower())
    except ValueError:
        raise ValidationFailed.single("provider", "Unsupported provider driver.") from None

    match driver:
        case IdpDriverKey.SAML:
            if saml is None:
                raise _unavailable()
            return await saml.authenticate(provider, payload, context)
        case IdpDriverKey.OIDC | IdpDriverKey.ENTRA:
            if oidc is None:
                raise _unavailable()
            return await oidc.authenticate(provider, payload, context)
        case IdpDriverKey.LDAP:
            if ldap is None:
                raise _unavailable()
            return await ldap.authenticate(provider, payload, context)
