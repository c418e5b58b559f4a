"""LDAP / Active Directory login.

POST /auth/login/ldap - Username and password bind against an LDAP provider

Each attempt passes the brute-force guard before credentials reach the
directory.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from grc_idp.api.deps import (
    get_ldap_authenticator,
    get_provider_service,
    resolve_login_provider,
    user_payload,
)
from grc_idp.auth.dispatch import authenticate_with_provider
from grc_idp.auth.ldap.authenticator import LdapAuthenticator
from grc_idp.core.brute_force import guard_login_attempt
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpDriverKey
from grc_idp.services.idp_providers import IdpProviderService

router = APIRouter(prefix="/auth/login", tags=["auth"])


class LdapLoginRequest(BaseModel):
    provider: str | None = Field(None, max_length=160)
    username: str | None = None
    password: str | None = Field(None, repr=False)


@router.post(
    "/ldap",
    summary="Sign in with LDAP credentials",
    dependencies=[Depends(guard_login_attempt)],
)
async def ldap_login(
    body: LdapLoginRequest,
    request: Request,
    service: IdpProviderService = Depends(get_provider_service),
    authenticator: LdapAuthenticator = Depends(get_ldap_authenticator),
) -> dict[str, Any]:
    provider = await resolve_login_provider(service, body.provider, (IdpDriverKey.LDAP,))
    user = await authenticate_with_provider(
        provider,
        {"username": body.username, "password": body.password},
        RequestContext.from_request(request),
        ldap=authenticator,
    )
    return {"ok": True, "user": user_payload(user)}
