"""Tests for OIDC / Entra ID token validation and provisioning.

ID tokens are signed with the session RSA key and verified against a JWKS
served through httpx.MockTransport.
"""

from __future__ import annotations

import time

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from grc_idp.auth.oidc.authenticator import (
    OidcAuthenticator,
    claim_value,
    extract_email,
    jwks_cache_key,
    normalize_jwks,
    resolve_name,
)
from grc_idp.auth.oidc.metadata import OidcProviderMetadataService
from grc_idp.core.errors import ValidationFailed


@pytest.fixture(scope="module")
def foreign_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
async def provider(make_provider, oidc_provider_config):
    config = dict(oidc_provider_config)
    config["jit"] = {
        "role_templates": [{"claim": "roles", "values": ["GRC.Admin"], "roles": ["admin"]}],
    }
    return await make_provider("corp-entra", "entra", config=config)


@pytest.fixture
def authenticator(db_session, audit, cache, oidc_http) -> OidcAuthenticator:
    metadata = OidcProviderMetadataService(cache, oidc_http)
    return OidcAuthenticator(db_session, audit, cache, metadata, http=oidc_http)


class TestClaimHelpers:
    def test_normalize_jwks_defaults_rsa_alg(self) -> None:
        document = normalize_jwks(
            {"keys": [{"kty": "RSA", "kid": "a"}, {"kty": "EC", "kid": "b"}, "junk"]}
        )
        assert document["keys"] == [
            {"kty": "RSA", "kid": "a", "alg": "RS256"},
            {"kty": "EC", "kid": "b"},
        ]

    def test_extract_email_prefers_email_then_upn(self) -> None:
        assert extract_email({"email": " Jane@Example.com "}) == "jane@example.com"
        assert extract_email({"upn": "CORP\\jdoe"}) is None
        assert extract_email({"upn": "JDoe@corp.example"}) == "jdoe@corp.example"

    def test_resolve_name_fallbacks(self) -> None:
        assert resolve_name({"given_name": "Jane", "family_name": "Doe"}, "x@y") == "Jane Doe"
        assert resolve_name({"unique_name": "CORP\\jdoe"}, "x@y") == "jdoe"
        assert resolve_name({}, "x@y") == "x@y"

    def test_claim_value_walks_dotted_paths(self) -> None:
        claims = {"realm_access": {"roles": ["admin"]}, "a.b": "flat"}
        assert claim_value(claims, "realm_access.roles") == ["admin"]
        assert claim_value(claims, "a.b") == "flat"
        assert claim_value(claims, "realm_access.missing") is None


class TestIdTokenLogin:
    async def test_direct_id_token_provisions_user(
        self, authenticator, provider, roles, id_token, request_context, audit
    ) -> None:
        token = id_token(nonce="n-1", roles=["GRC.Admin"])

        user = await authenticator.authenticate(
            provider, {"id_token": token, "nonce": "n-1"}, request_context
        )

        assert user.email == "jane@example.com"
        assert user.name == "Jane Doe"
        assert [role.id for role in user.roles] == ["admin"]
        assert audit.log.await_args.kwargs["action"] == "auth.oidc.login"
        assert audit.log.await_args.kwargs["meta"]["subject"] == "subject-1"

    async def test_jwks_is_cached(
        self, authenticator, provider, id_token, request_context, oidc_idp, cache
    ) -> None:
        await authenticator.authenticate(provider, {"id_token": id_token()}, request_context)
        await authenticator.authenticate(provider, {"id_token": id_token()}, request_context)

        assert oidc_idp.count("/keys") == 1
        assert await cache.get(jwks_cache_key(provider)) is not None

    async def test_audience_list_accepted(
        self, authenticator, provider, id_token, request_context
    ) -> None:
        token = id_token(aud=["other-app", "grc-client"])
        user = await authenticator.authenticate(provider, {"id_token": token}, request_context)
        assert user.email == "jane@example.com"

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"iss": "https://evil.example"}, "Issuer mismatch."),
            ({"aud": "another-client"}, "Audience mismatch."),
            ({"aud": ["other-client"]}, "Audience mismatch."),
            ({"exp": int(time.time()) - 3600}, "ID token expired."),
            ({"nonce": "other"}, "Nonce mismatch."),
        ],
    )
    async def test_claim_checks(
        self, authenticator, provider, id_token, request_context, audit, overrides, message
    ) -> None:
        token = id_token(**overrides)

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(
                provider, {"id_token": token, "nonce": "expected"}, request_context
            )

        assert exc_info.value.status_code == 401
        assert exc_info.value.errors == {"code": [message]}
        assert audit.log.await_args.kwargs["action"] == "auth.oidc.login.failed"

    async def test_signature_from_unknown_key(
        self, authenticator, provider, id_token, foreign_key_pem, request_context
    ) -> None:
        token = id_token(key=foreign_key_pem)
        with pytest.raises(ValidationFailed, match="Unable to validate ID token."):
            await authenticator.authenticate(provider, {"id_token": token}, request_context)

    async def test_missing_email_claim(
        self, authenticator, provider, id_token, request_context
    ) -> None:
        token = id_token(email=None, upn="CORP\\jdoe")
        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(provider, {"id_token": token}, request_context)
        assert exc_info.value.status_code == 422
        assert exc_info.value.errors == {"email": ["OIDC response missing email claim."]}

    async def test_rejects_saml_provider(
        self, authenticator, make_provider, request_context
    ) -> None:
        saml = await make_provider("corp-saml", "saml")
        with pytest.raises(ValidationFailed, match="does not support OIDC"):
            await authenticator.authenticate(saml, {"id_token": "x"}, request_context)


class TestCodeExchange:
    async def test_code_is_exchanged_with_verifier(
        self, authenticator, provider, id_token, request_context, oidc_idp
    ) -> None:
        oidc_idp.token_response = {"id_token": id_token(), "access_token": "at"}

        user = await authenticator.authenticate(
            provider,
            {
                "code": "auth-code",
                "redirect_uri": "https://grc.example.test/auth/callback",
                "code_verifier": "pkce-verifier",
            },
            request_context,
        )

        assert user.email == "jane@example.com"
        form = oidc_idp.token_forms[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["code_verifier"] == "pkce-verifier"
        assert form["client_secret"] == "s3cret"
        assert form["scope"] == "openid email profile"

    async def test_provider_error_surfaces(
        self, authenticator, provider, request_context, oidc_idp
    ) -> None:
        oidc_idp.token_response = {"error": "invalid_grant", "error_description": "Code expired"}

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(
                provider,
                {"code": "stale", "redirect_uri": "https://grc.example.test/auth/callback"},
                request_context,
            )

        assert exc_info.value.errors == {"code": ["Code expired"]}

    async def test_code_required(self, authenticator, provider, request_context) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(provider, {}, request_context)
        assert exc_info.value.errors == {"code": ["Authorization code is required."]}
        assert exc_info.value.status_code == 422


class TestProviderFailures:
    @pytest.mark.parametrize(
        "missing,message",
        [
            ("issuer", "Provider issuer is not configured."),
            ("client_id", "Provider client_id is not configured."),
        ],
    )
    async def test_misconfigured_provider_is_a_validation_error(
        self,
        authenticator,
        make_provider,
        oidc_provider_config,
        id_token,
        request_context,
        audit,
        missing,
        message,
    ) -> None:
        config = {k: v for k, v in oidc_provider_config.items() if k != missing}
        provider = await make_provider("half-done", "oidc", config=config)

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(provider, {"id_token": id_token()}, request_context)

        assert exc_info.value.status_code == 422
        assert exc_info.value.errors == {"provider": [message]}
        assert audit.log.await_args.kwargs["action"] == "auth.oidc.login.failed"

    async def test_missing_client_secret_on_code_exchange(
        self, authenticator, make_provider, oidc_provider_config, request_context
    ) -> None:
        config = {k: v for k, v in oidc_provider_config.items() if k != "client_secret"}
        provider = await make_provider("no-secret", "oidc", config=config)

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(
                provider,
                {"code": "c", "redirect_uri": "https://grc.example.test/auth/callback"},
                request_context,
            )

        assert exc_info.value.status_code == 422
        assert exc_info.value.errors == {"provider": ["Provider client_secret is not configured."]}

    @pytest.mark.parametrize(
        "jwks,message",
        [
            ({"keys": []}, "Provider JWKS is empty."),
            ({"keys": [{"kty": "RSA", "kid": "broken"}]}, "JWKS response malformed."),
        ],
    )
    async def test_unusable_jwks_is_a_validation_error(
        self, authenticator, provider, id_token, request_context, oidc_idp, jwks, message
    ) -> None:
        oidc_idp.jwks = jwks

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(provider, {"id_token": id_token()}, request_context)

        assert exc_info.value.status_code == 422
        assert exc_info.value.errors == {"provider": [message]}

    async def test_jwks_not_found_is_a_validation_error(
        self, authenticator, provider, id_token, request_context, oidc_idp
    ) -> None:
        oidc_idp.jwks_status = 404

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(provider, {"id_token": id_token()}, request_context)

        assert exc_info.value.status_code == 422
        assert exc_info.value.errors == {"provider": ["Unable to fetch JWKS."]}

    async def test_discovery_outage_is_an_authentication_failure(
        self, authenticator, provider, id_token, request_context, oidc_idp
    ) -> None:
        oidc_idp.fail_discovery = True

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(provider, {"id_token": id_token()}, request_context)

        assert exc_info.value.status_code == 401
        assert exc_info.value.errors == {"code": ["Unable to retrieve discovery document."]}

    async def test_discovery_not_found_is_a_validation_error(
        self, authenticator, provider, id_token, request_context, oidc_idp
    ) -> None:
        oidc_idp.fail_discovery = True
        oidc_idp.discovery_status = 404

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(provider, {"id_token": id_token()}, request_context)

        assert exc_info.value.status_code == 422
        assert exc_info.value.errors == {"provider": ["Unable to retrieve discovery document."]}

    async def test_jwks_timeout_is_an_authentication_failure(
        self, db_session, audit, cache, provider, id_token, request_context, oidc_idp
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/keys"):
                raise httpx.ConnectTimeout("timed out", request=request)
            return oidc_idp(request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            metadata = OidcProviderMetadataService(cache, http)
            authenticator = OidcAuthenticator(db_session, audit, cache, metadata, http=http)

            with pytest.raises(ValidationFailed) as exc_info:
                await authenticator.authenticate(
                    provider, {"id_token": id_token()}, request_context
                )

        assert exc_info.value.status_code == 401
        assert exc_info.value.errors == {"code": ["Unable to fetch JWKS."]}
