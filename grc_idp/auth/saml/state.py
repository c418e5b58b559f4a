"""Signed, single-use SAML RelayState tokens.

The RelayState sent with an AuthnRequest is an HS256 JWT (PyJWT) carrying
a StateDescriptor. At the ACS the token is verified and its replay marker
``saml:state:{request_id}`` is flipped from ``pending`` to ``consumed`` with
an atomic compare-and-set, so a token validates at most once.

Key rotation: tokens are always signed with the primary key. Verification
walks the ordered key list (primary, then previous). The ``kid`` header is
informational only and never selects a key.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

import jwt
import structlog

from grc_idp.cache.backend import CacheBackend
from grc_idp.config import Settings
from grc_idp.core.errors import SamlStateError
from grc_idp.core.input_validation import safe_return_path
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpProvider

log = structlog.get_logger(__name__)

KEY_PRIMARY = "primary"
KEY_PREVIOUS = "previous"

TOKEN_VERSION = 1
DEFAULT_STATE_ISSUER = "grc.saml.state"

_CACHE_PREFIX = "saml:state:"
_PENDING = "pending"
_CONSUMED = "consumed"


def normalize_secret(secret: str) -> bytes:
    """Decode ``base64:`` / ``hex:`` prefixed secrets; plain strings are used as-is."""
    trimmed = secret.strip()
    if not trimmed:
        raise SamlStateError("SAML state signing secret is empty.")

    if trimmed.startswith("base64:"):
        try:
            return base64.b64decode(trimmed[7:], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SamlStateError("Invalid base64-encoded SAML state secret.") from exc

    if trimmed.startswith("hex:"):
        try:
            return bytes.fromhex(trimmed[4:])
        except ValueError as exc:
            raise SamlStateError("Invalid hex-encoded SAML state secret.") from exc

    return trimmed.encode("utf-8")


@dataclass(frozen=True)
class StateDescriptor:
    request_id: str
    provider_id: str
    provider_key: str
    intended_path: str | None
    issued_at: int
    client_hash: str | None
    issuer: str
    audience: str
    version: int = TOKEN_VERSION
    token: str | None = None
    signature_key: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": self.issued_at,
            "ver": self.version,
            "rid": self.request_id,
            "pid": self.provider_id,
            "pkey": self.provider_key,
            "dest": self.intended_path,
            "fp": self.client_hash,
        }
        return {key: value for key, value in payload.items() if value is not None}

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any], token: str | None, signature_key: str
    ) -> StateDescriptor:
        return cls(
            request_id=_required_str(payload, "rid"),
            provider_id=_required_str(payload, "pid"),
            provider_key=_required_str(payload, "pkey"),
            intended_path=_optional_str(payload.get("dest")),
            issued_at=_required_int(payload, "iat"),
            client_hash=_optional_str(payload.get("fp")),
            issuer=_required_str(payload, "iss"),
            audience=_required_str(payload, "aud"),
            version=_required_int(payload, "ver"),
            token=token,
            signature_key=signature_key,
        )


def _required_str(payload: dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise SamlStateError(f'SAML state token missing field "{field}".')
    return value


def _optional_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _required_int(payload: dict[str, Any], field: str) -> int:
    value = payload.get(field)
    if isinstance(value, bool):
        raise SamlStateError(f'SAML state token missing numeric field "{field}".')
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
    raise SamlStateError(f'SAML state token missing numeric field "{field}".')


class StateTokenSigner:
    """HS256 signer with an ordered verification key list."""

    def __init__(
        self,
        issuer: str,
        audience: str,
        primary_secret: str,
        previous_secret: str | None = None,
    ) -> None:
        self._issuer = issuer
        self._audience = audience
        self._keys: list[tuple[str, bytes]] = [(KEY_PRIMARY, normalize_secret(primary_secret))]
        if previous_secret is not None and previous_secret.strip():
            self._keys.append((KEY_PREVIOUS, normalize_secret(previous_secret)))

    @classmethod
    def from_settings(cls, settings: Settings, acs_url: str) -> StateTokenSigner:
        issuer = (settings.saml_state_issuer or "").strip() or DEFAULT_STATE_ISSUER
        audience = (settings.saml_state_audience or "").strip() or acs_url
        return cls(
            issuer,
            audience,
            settings.state_primary_key(),
            settings.state_previous_key(),
        )

    @property
    def issuer(self) -> str:
        return self._issuer

    @property
    def audience(self) -> str:
        return self._audience

    def sign(self, descriptor: StateDescriptor) -> str:
        payload = descriptor.to_payload()
        payload["iss"] = self._issuer
        payload["aud"] = self._audience
        return jwt.encode(
            payload, self._keys[0][1], algorithm="HS256", headers={"kid": KEY_PRIMARY}
        )

    def verify(self, token: str) -> StateDescriptor:
        # Every key is tried in order; the kid header is ignored
        for key_id, key in self._keys:
            try:
                payload = jwt.decode(
                    token,
                    key,
                    algorithms=["HS256"],
                    issuer=self._issuer,
                    audience=self._audience,
                    # iat is checked by StateTokenFactory against its own clock
                    options={"verify_iat": False, "require": ["iss", "aud", "iat"]},
                )
            except jwt.InvalidSignatureError:
                continue
            except jwt.InvalidAlgorithmError as exc:
                raise SamlStateError("Unsupported SAML state token algorithm.") from exc
            except jwt.InvalidIssuerError as exc:
                raise SamlStateError("SAML state token issuer mismatch.") from exc
            except jwt.InvalidAudienceError as exc:
                raise SamlStateError("SAML state token audience mismatch.") from exc
            except jwt.InvalidTokenError as exc:
                raise SamlStateError("Malformed SAML state token.") from exc
            return StateDescriptor.from_payload(payload, token, key_id)

        raise SamlStateError("Invalid SAML state token signature.")

    def hash_client_fingerprint(self, raw: str, key_id: str = KEY_PRIMARY) -> str:
        key = dict(self._keys).get(key_id, self._keys[0][1])
        return hmac.new(key, raw.encode("utf-8"), hashlib.sha256).hexdigest()


class StateTokenFactory:
    """Issues RelayState tokens and validates them exactly once."""

    def __init__(
        self,
        cache: CacheBackend,
        signer: StateTokenSigner,
        *,
        ttl_seconds: int = 600,
        clock_skew_seconds: int = 30,
        enforce_client_hash: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._signer = signer
        self._ttl = ttl_seconds if ttl_seconds > 0 else 600
        self._skew = max(0, clock_skew_seconds)
        self._enforce_client_hash = enforce_client_hash
        self._clock = clock

    @classmethod
    def from_settings(
        cls, cache: CacheBackend, settings: Settings, acs_url: str
    ) -> StateTokenFactory:
        return cls(
            cache,
            StateTokenSigner.from_settings(settings, acs_url),
            ttl_seconds=settings.saml_state_ttl_seconds,
            clock_skew_seconds=settings.saml_state_clock_skew_seconds,
            enforce_client_hash=settings.saml_state_enforce_client_hash,
        )

    async def issue(
        self,
        provider: IdpProvider,
        request_id: str,
        intended_path: str | None,
        context: RequestContext,
    ) -> StateDescriptor:
        descriptor = StateDescriptor(
            request_id=request_id,
            provider_id=str(provider.id),
            provider_key=provider.key,
            intended_path=safe_return_path(intended_path),
            issued_at=int(self._clock()),
            client_hash=self._client_hash(context, KEY_PRIMARY),
            issuer=self._signer.issuer,
            audience=self._signer.audience,
            version=TOKEN_VERSION,
        )
        token = self._signer.sign(descriptor)
        await self._cache.set(self._cache_key(request_id), _PENDING, self._ttl)
        return replace(descriptor, token=token, signature_key=KEY_PRIMARY)

    async def validate(self, token: str, context: RequestContext) -> StateDescriptor:
        descriptor = self._signer.verify(token)

        if descriptor.version != TOKEN_VERSION:
            raise SamlStateError("Unsupported SAML state token version.")

        now = int(self._clock())
        if descriptor.issued_at > now + self._skew:
            raise SamlStateError("SAML state token issued in the future.")
        if descriptor.issued_at + self._ttl + self._skew < now:
            raise SamlStateError("SAML state token has expired.")

        await self._consume(descriptor.request_id)
        self._check_fingerprint(descriptor, context)
        return descriptor

    async def _consume(self, request_id: str) -> None:
        previous = await self._cache.compare_and_set(
            self._cache_key(request_id), _PENDING, _CONSUMED
        )
        if previous == _CONSUMED:
            log.warning("auth.saml.state_replayed", request_id=request_id)
            raise SamlStateError("SAML state token already consumed.")
        if previous != _PENDING:
            raise SamlStateError("SAML state token not recognized.")

    def _check_fingerprint(self, descriptor: StateDescriptor, context: RequestContext) -> None:
        if not self._enforce_client_hash:
            return
        if descriptor.client_hash is None:
            raise SamlStateError("SAML state token missing client fingerprint.")

        raw = self._raw_fingerprint(context)
        if raw is None:
            raise SamlStateError("Unable to derive client fingerprint.")

        expected = self._signer.hash_client_fingerprint(
            raw, descriptor.signature_key or KEY_PRIMARY
        )
        if not hmac.compare_digest(descriptor.client_hash, expected):
            raise SamlStateError("SAML state token fingerprint mismatch.")

    def _client_hash(self, context: RequestContext, key_id: str) -> str | None:
        if not self._enforce_client_hash:
            return None
        raw = self._raw_fingerprint(context)
        if raw is None:
            return None
        return self._signer.hash_client_fingerprint(raw, key_id)

    @staticmethod
    def _raw_fingerprint(context: RequestContext) -> str | None:
        if context.ip is None or context.ua is None:
            return None
        return f"{context.ip}|{context.ua}"

    @staticmethod
    def _cache_key(request_id: str) -> str:
        return _CACHE_PREFIX + request_id
