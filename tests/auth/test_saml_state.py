"""Tests for signed, single-use SAML RelayState tokens.

Coverage:
- Round trip of the descriptor (provider, request id, intended path)
- Expiry window with clock skew
- Issuer, audience, algorithm and signature checks on the PyJWT token
- Key rotation: previous key verifies, primary always signs
- Replay protection and client fingerprint binding
"""

from __future__ import annotations

import uuid
from types import SimpleNamespace

import jwt
import pytest

from grc_idp.auth.saml.state import (
    KEY_PREVIOUS,
    KEY_PRIMARY,
    StateTokenFactory,
    StateTokenSigner,
    normalize_secret,
)
from grc_idp.core.errors import SamlStateError
from grc_idp.core.request import RequestContext

ACS_URL = "https://grc.example.test/api/auth/saml/acs"
NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def provider() -> SimpleNamespace:
    return SimpleNamespace(id=uuid.uuid4(), key="corp-saml")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def signer() -> StateTokenSigner:
    return StateTokenSigner("grc.saml.state", ACS_URL, "primary-secret")


@pytest.fixture
def factory(cache, signer, clock) -> StateTokenFactory:
    return StateTokenFactory(cache, signer, ttl_seconds=120, clock_skew_seconds=30, clock=clock)


class TestNormalizeSecret:
    def test_prefixed_secrets_are_decoded(self) -> None:
        assert normalize_secret("base64:c2VjcmV0") == b"secret"
        assert normalize_secret("hex:736563726574") == b"secret"
        assert normalize_secret("  plain ") == b"plain"

    @pytest.mark.parametrize("secret", ["", "   ", "base64:!!!", "hex:zz"])
    def test_invalid_secrets_raise(self, secret) -> None:
        with pytest.raises(SamlStateError):
            normalize_secret(secret)


class TestIssueAndValidate:
    async def test_round_trip(self, factory, provider, request_context) -> None:
        issued = await factory.issue(provider, "_req1", "/controls/42", request_context)
        validated = await factory.validate(issued.token, request_context)

        assert validated.request_id == "_req1"
        assert validated.provider_id == str(provider.id)
        assert validated.provider_key == "corp-saml"
        assert validated.intended_path == "/controls/42"
        assert validated.signature_key == KEY_PRIMARY

    @pytest.mark.parametrize("path", ["https://evil.example", "//evil.example", "relative"])
    async def test_offsite_intended_path_dropped(
        self, factory, provider, request_context, path
    ) -> None:
        issued = await factory.issue(provider, "_req1", path, request_context)
        assert issued.intended_path is None

    async def test_token_within_window_accepted(
        self, factory, provider, request_context, clock
    ) -> None:
        issued = await factory.issue(provider, "_req1", None, request_context)
        clock.now = NOW + 60
        assert (await factory.validate(issued.token, request_context)).request_id == "_req1"

    async def test_expired_token_rejected(self, factory, provider, request_context, clock) -> None:
        issued = await factory.issue(provider, "_req1", None, request_context)
        clock.now = NOW + 200

        with pytest.raises(SamlStateError, match="expired"):
            await factory.validate(issued.token, request_context)

    async def test_future_token_rejected(self, factory, provider, request_context, clock) -> None:
        clock.now = NOW + 100
        issued = await factory.issue(provider, "_req1", None, request_context)
        clock.now = NOW

        with pytest.raises(SamlStateError, match="future"):
            await factory.validate(issued.token, request_context)

    async def test_replay_rejected(self, factory, provider, request_context) -> None:
        issued = await factory.issue(provider, "_req1", None, request_context)
        await factory.validate(issued.token, request_context)

        with pytest.raises(SamlStateError, match="already consumed"):
            await factory.validate(issued.token, request_context)

    async def test_unknown_request_rejected(self, factory, provider, request_context, cache) -> None:
        issued = await factory.issue(provider, "_req1", None, request_context)
        await cache.delete("saml:state:_req1")

        with pytest.raises(SamlStateError, match="not recognized"):
            await factory.validate(issued.token, request_context)

    async def test_other_client_rejected(self, factory, provider, request_context) -> None:
        issued = await factory.issue(provider, "_req1", None, request_context)
        other = RequestContext(ip="198.51.100.7", ua=request_context.ua)

        with pytest.raises(SamlStateError, match="fingerprint"):
            await factory.validate(issued.token, other)

    async def test_fingerprint_not_enforced_when_disabled(
        self, cache, signer, clock, provider, request_context
    ) -> None:
        factory = StateTokenFactory(cache, signer, enforce_client_hash=False, clock=clock)
        issued = await factory.issue(provider, "_req1", None, request_context)

        validated = await factory.validate(issued.token, RequestContext())
        assert validated.request_id == "_req1"


class TestSigner:
    async def test_audience_mismatch_rejected(self, cache, clock, provider, request_context) -> None:
        issuing = StateTokenFactory(
            cache, StateTokenSigner("grc.saml.state", "https://other/acs", "primary-secret"), clock=clock
        )
        issued = await issuing.issue(provider, "_req1", None, request_context)

        verifier = StateTokenSigner("grc.saml.state", ACS_URL, "primary-secret")
        with pytest.raises(SamlStateError, match="audience"):
            verifier.verify(issued.token)

    async def test_tampered_payload_rejected(self, factory, provider, request_context) -> None:
        issued = await factory.issue(provider, "_req1", None, request_context)
        header, payload, signature = issued.token.split(".")
        forged = f"{header}.{payload[:-2]}AA.{signature}"

        with pytest.raises(SamlStateError):
            await factory.validate(forged, request_context)

    @pytest.mark.parametrize("token", ["", "a.b", "a..c", "not-a-token"])
    def test_malformed_tokens_rejected(self, signer, token) -> None:
        with pytest.raises(SamlStateError):
            signer.verify(token)

    async def test_previous_key_still_verifies(self, cache, clock, provider, request_context) -> None:
        old = StateTokenFactory(
            cache, StateTokenSigner("grc.saml.state", ACS_URL, "old-secret"), clock=clock
        )
        issued = await old.issue(provider, "_req1", None, request_context)

        rotated = StateTokenFactory(
            cache,
            StateTokenSigner("grc.saml.state", ACS_URL, "new-secret", "old-secret"),
            clock=clock,
        )
        validated = await rotated.validate(issued.token, request_context)
        assert validated.signature_key == KEY_PREVIOUS

    async def test_kid_header_does_not_select_key(self, cache, clock, provider, request_context) -> None:
        stranger = StateTokenFactory(
            cache, StateTokenSigner("grc.saml.state", ACS_URL, "attacker-secret"), clock=clock
        )
        issued = await stranger.issue(provider, "_req1", None, request_context)

        with pytest.raises(SamlStateError, match="signature"):
            await StateTokenFactory(
                cache,
                StateTokenSigner("grc.saml.state", ACS_URL, "new-secret", "old-secret"),
                clock=clock,
            ).validate(issued.token, request_context)

    def test_from_settings_defaults_audience_to_acs(self, settings) -> None:
        signer = StateTokenSigner.from_settings(settings, ACS_URL)
        assert signer.issuer == "grc.saml.state"
        assert signer.audience == ACS_URL

    async def test_token_is_standard_jwt(self, factory, provider, request_context) -> None:
        issued = await factory.issue(provider, "_req1", "/risks", request_context)

        assert jwt.get_unverified_header(issued.token) == {
            "alg": "HS256",
            "typ": "JWT",
            "kid": KEY_PRIMARY,
        }
        claims = jwt.decode(
            issued.token,
            "primary-secret",
            algorithms=["HS256"],
            audience=ACS_URL,
            options={"verify_iat": False},
        )
        assert claims["rid"] == "_req1"
        assert claims["dest"] == "/risks"
        assert claims["iss"] == "grc.saml.state"

    def test_other_algorithm_rejected(self, signer) -> None:
        token = jwt.encode(
            {"iss": "grc.saml.state", "aud": ACS_URL, "iat": NOW},
            "primary-secret",
            algorithm="HS512",
        )

        with pytest.raises(SamlStateError, match="algorithm"):
            signer.verify(token)

    def test_issuer_mismatch_rejected(self, signer) -> None:
        token = jwt.encode(
            {"iss": "someone-else", "aud": ACS_URL, "iat": NOW}, "primary-secret", algorithm="HS256"
        )

        with pytest.raises(SamlStateError, match="issuer"):
            signer.verify(token)

    def test_missing_issued_at_rejected(self, signer) -> None:
        token = jwt.encode({"iss": "grc.saml.state", "aud": ACS_URL}, "primary-secret")

        with pytest.raises(SamlStateError, match="Malformed"):
            signer.verify(token)
