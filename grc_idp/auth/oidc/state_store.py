"""Short-lived OIDC authorization state (PKCE verifier, nonce, redirect URI).

The state token handed to the IdP is an opaque random string; everything it
stands for lives in the cache for ten minutes and can be consumed once, by
the same client address and user agent that started the flow.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Any

import structlog

from grc_idp.cache.backend import CacheBackend
from grc_idp.core.errors import ValidationFailed
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpProvider

log = structlog.get_logger(__name__)

STATE_TTL_SECONDS = 600
_CACHE_PREFIX = "idp:oidc:state:"


class OidcStateStore:
    def __init__(self, cache: CacheBackend, clock: Callable[[], float] = time.time) -> None:
        self._cache = cache
        self._clock = clock

    async def issue(
        self,
        provider: IdpProvider,
        redirect_uri: str,
        code_verifier: str,
        nonce: str,
        context: RequestContext,
        return_to: str | None = None,
    ) -> str:
        state = secrets.token_hex(20)
        payload: dict[str, Any] = {
            "provider_id": str(provider.id),
            "provider_key": provider.key,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "nonce": nonce,
            "ip": context.ip or "",
            "ua": context.ua or "",
            "issued_at": int(self._clock()),
        }
        if return_to:
            payload["return_to"] = return_to
        await self._cache.set(_CACHE_PREFIX + state, payload, STATE_TTL_SECONDS)
        return state

    async def consume(self, state: str, context: RequestContext) -> dict[str, str] | None:
        """Pull the stored state; None when unknown, expired or from another client."""
        stored = await self._cache.pull(_CACHE_PREFIX + state)
        if not isinstance(stored, dict) or not stored:
            return None

        if stored.get("ip") != (context.ip or "") or stored.get("ua") != (context.ua or ""):
            log.warning("auth.oidc.state_client_mismatch", provider_key=stored.get("provider_key"))
            return None

        return {key: value for key, value in stored.items() if isinstance(value, str)}


def merge_state_payload(payload: dict[str, Any], state: dict[str, str]) -> dict[str, Any]:
    """Fill redirect_uri, code_verifier and nonce of a login payload from stored state."""
    merged = dict(payload)

    stored_redirect = (state.get("redirect_uri") or "").strip()
    if stored_redirect:
        incoming = merged.get("redirect_uri")
        incoming = incoming.strip() if isinstance(incoming, str) else ""
        if incoming and incoming != stored_redirect:
            raise ValidationFailed.single(
                "redirect_uri", "Redirect URI does not match authorization request."
            )
        if not incoming:
            merged["redirect_uri"] = stored_redirect

    verifier = state.get("code_verifier")
    if verifier:
        merged["code_verifier"] = verifier

    if not merged.get("nonce") and state.get("nonce"):
        merged["nonce"] = state["nonce"]

    return merged
