"""Authorization-code redirects with PKCE (S256) and a nonce."""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlencode

import structlog

from grc_idp.auth.oidc.metadata import OidcProviderMetadataService, provider_config
from grc_idp.auth.oidc.state_store import OidcStateStore
from grc_idp.core.errors import ValidationFailed
from grc_idp.core.input_validation import is_valid_url, trimmed_string
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpProvider

log = structlog.get_logger(__name__)


def generate_code_verifier() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_nonce() -> str:
    return secrets.token_hex(16)


def build_scope(config: dict[str, Any]) -> str:
    scopes = config.get("scopes")
    if not isinstance(scopes, list):
        return "openid"
    tokens = dict.fromkeys(
        scope.strip() for scope in scopes if isinstance(scope, str) and scope.strip()
    )
    return " ".join(tokens) or "openid"


@dataclass(frozen=True)
class OidcAuthorization:
    url: str
    state: str
    redirect_uri: str


class OidcAuthorizationService:
    def __init__(
        self,
        metadata: OidcProviderMetadataService,
        state_store: OidcStateStore,
        default_callback_url: str,
    ) -> None:
        self._metadata = metadata
        self._state_store = state_store
        self._default_callback_url = default_callback_url

    def resolve_redirect_uri(self, config: dict[str, Any], requested: str | None) -> str:
        configured = [
            entry.strip()
            for entry in config.get("redirect_uris") or []
            if isinstance(entry, str) and entry.strip()
        ]
        requested = trimmed_string(requested)
        if requested is not None:
            if not is_valid_url(requested):
                raise ValidationFailed.single("redirect_uri", "Redirect URI must be a valid URL.")
            if configured and requested not in configured:
                raise ValidationFailed.single(
                    "redirect_uri", "Redirect URI is not registered for this provider."
                )
            return requested
        if configured:
            return configured[0]
        return self._default_callback_url

    async def authorize(
        self,
        provider: IdpProvider,
        context: RequestContext,
        *,
        redirect_uri: str | None = None,
        return_to: str | None = None,
    ) -> OidcAuthorization:
        config = provider_config(provider)
        resolved_redirect = self.resolve_redirect_uri(config, redirect_uri)
        endpoint = await self._metadata.authorization_endpoint(provider, config)

        verifier = generate_code_verifier()
        nonce = generate_nonce()
        state = await self._state_store.issue(
            provider, resolved_redirect, verifier, nonce, context, return_to=return_to
        )

        params = {
            "client_id": trimmed_string(config.get("client_id")),
            "redirect_uri": resolved_redirect,
            "response_type": "code",
            "scope": build_scope(config),
            "state": state,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
            "nonce": nonce,
        }
        query = urlencode({k: v for k, v in params.items() if v}, quote_via=quote)
        separator = "&" if "?" in endpoint else "?"

        log.info("auth.oidc.authorize", provider_key=provider.key)
        return OidcAuthorization(
            url=f"{endpoint}{separator}{query}",
            state=state,
            redirect_uri=resolved_redirect,
        )
