"""Tests for the LDAP, OIDC and SAML login routes."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlsplit

import pytest

from grc_idp.api.deps import get_saml_authenticator
from grc_idp.auth.saml.authenticator import SamlAuthenticator
from grc_idp.auth.saml.state import StateDescriptor
from grc_idp.config import BruteForceStrategy
from grc_idp.core.brute_force import BruteForceGuard, get_brute_force_guard
from grc_idp.models.user import User

LDAP_CONFIG = {
    "host": "ldap.example.test",
    "base_dn": "ou=people,dc=example,dc=test",
    "bind_dn": "cn=svc,dc=example,dc=test",
    "bind_password": "svc-pass",
    "user_filter": "(uid={{username}})",
}

# HS256 header, empty payload, wrong signature
FORGED_STATE = "eyJhbGciOiJIUzI1NiJ9.e30.c2ln"

OIDC_CONFIG = {
    "issuer": "https://login.example.test/tenant",
    "client_id": "grc-client",
    "client_secret": "s3cret",
    "scopes": ["openid", "email", "profile"],
}


def query_of(url: str) -> dict[str, str]:
    return {name: values[0] for name, values in parse_qs(urlsplit(url).query).items()}


# ------------------------------------------------------------------ #
# LDAP
# ------------------------------------------------------------------ #


class TestLdapLogin:
    @pytest.fixture(autouse=True)
    async def directory(self, make_provider, ldap_client):
        ldap_client.add_user(
            "jdoe",
            "correct horse",
            "uid=jdoe,ou=people,dc=example,dc=test",
            mail="jdoe@example.com",
            cn="Jane Doe",
        )
        await make_provider("corp-ldap", "ldap", config=LDAP_CONFIG)

    async def test_success(self, client) -> None:
        response = await client.post(
            "/api/auth/login/ldap",
            json={"provider": "corp-ldap", "username": "jdoe", "password": "correct horse"},
        )

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["email"] == "jdoe@example.com"
        assert user["name"] == "Jane Doe"

    async def test_wrong_password(self, client) -> None:
        response = await client.post(
            "/api/auth/login/ldap",
            json={"provider": "corp-ldap", "username": "jdoe", "password": "nope"},
        )

        assert response.status_code == 401
        assert response.json() == {
            "ok": False,
            "code": "AUTH_FAILED",
            "errors": {"username": ["Invalid credentials."]},
        }

    @pytest.mark.parametrize(
        "provider,status,code",
        [
            (None, 422, "IDP_PROVIDER_INVALID"),
            ("missing", 404, "IDP_PROVIDER_NOT_FOUND"),
            ("corp-oidc", 422, "IDP_PROVIDER_UNSUPPORTED"),
            ("old-ldap", 403, "IDP_PROVIDER_DISABLED"),
        ],
    )
    async def test_provider_lookup_failures(
        self, client, make_provider, provider, status, code
    ) -> None:
        await make_provider("corp-oidc", "oidc", order=2, config=OIDC_CONFIG)
        await make_provider("old-ldap", "ldap", order=3, enabled=False, config=LDAP_CONFIG)

        response = await client.post(
            "/api/auth/login/ldap",
            json={"provider": provider, "username": "jdoe", "password": "correct horse"},
        )

        assert response.status_code == status
        assert response.json()["code"] == code

    async def test_brute_force_lock(self, app, client, settings, cache, audit) -> None:
        guarded = settings.model_copy(
            update={
                "auth_bruteforce_enabled": True,
                "auth_bruteforce_strategy": BruteForceStrategy.IP,
                "auth_bruteforce_max_attempts": 2,
            }
        )
        guard = BruteForceGuard(guarded, cache, audit)
        app.dependency_overrides[get_brute_force_guard] = lambda: guard
        body = {"provider": "corp-ldap", "username": "jdoe", "password": "nope"}

        first = await client.post("/api/auth/login/ldap", json=body)
        second = await client.post("/api/auth/login/ldap", json=body)

        assert first.status_code == 401
        assert second.status_code == 429
        assert second.json()["code"] == "AUTH_LOCKED"
        assert second.json()["strategy"] == "ip"
        assert int(second.headers["retry-after"]) >= 1
        assert second.headers["x-ratelimit-limit"] == "2"


# ------------------------------------------------------------------ #
# OIDC
# ------------------------------------------------------------------ #


class TestOidcRoutes:
    @pytest.fixture(autouse=True)
    async def provider(self, make_provider):
        return await make_provider("corp-oidc", "oidc", config=OIDC_CONFIG)

    async def authorize(self, client, **params) -> dict:
        response = await client.get(
            "/api/auth/oidc/authorize",
            params={"provider": "corp-oidc", "format": "json", **params},
        )
        assert response.status_code == 200, response.text
        return response.json()

    async def test_authorize_json(self, client) -> None:
        body = await self.authorize(client)

        assert body["redirect"].startswith("https://login.example.test/tenant/authorize?")
        query = query_of(body["redirect"])
        assert query["state"] == body["state"]
        assert query["code_challenge_method"] == "S256"
        assert query["redirect_uri"] == "https://grc.example.test/auth/callback"

    async def test_authorize_redirects_browsers(self, client) -> None:
        response = await client.get("/api/auth/oidc/authorize", params={"provider": "corp-oidc"})

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://login.example.test/tenant/")

    async def test_discovery_failure(self, client, oidc_idp) -> None:
        oidc_idp.fail_discovery = True

        response = await client.get(
            "/api/auth/oidc/authorize", params={"provider": "corp-oidc", "format": "json"}
        )

        assert response.status_code == 502
        assert response.json()["code"] == "IDP_OIDC_DISCOVERY_FAILED"

    async def test_code_login_with_stored_state(self, client, oidc_idp, id_token) -> None:
        body = await self.authorize(client, **{"return": "/risks/42"})
        nonce = query_of(body["redirect"])["nonce"]
        oidc_idp.token_response = {"id_token": id_token(nonce=nonce)}

        response = await client.post(
            "/api/auth/oidc/login", json={"state": body["state"], "code": "auth-code"}
        )

        assert response.status_code == 200, response.text
        assert response.json()["user"]["email"] == "jane@example.com"
        assert response.json()["return_to"] == "/risks/42"
        form = oidc_idp.token_forms[0]
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == "https://grc.example.test/auth/callback"
        assert "code_verifier" in form

        replay = await client.post(
            "/api/auth/oidc/login", json={"state": body["state"], "code": "auth-code"}
        )
        assert replay.status_code == 422
        assert replay.json()["code"] == "IDP_OIDC_STATE_INVALID"

    async def test_state_bound_to_provider(self, client, make_provider) -> None:
        await make_provider("other-oidc", "oidc", order=2, config=OIDC_CONFIG)
        body = await self.authorize(client)

        response = await client.post(
            "/api/auth/oidc/login",
            json={"state": body["state"], "code": "auth-code", "provider": "other-oidc"},
        )

        assert response.status_code == 422
        assert response.json()["code"] == "IDP_OIDC_STATE_MISMATCH"

    async def test_misconfigured_provider(self, client, make_provider, id_token) -> None:
        config = {k: v for k, v in OIDC_CONFIG.items() if k != "issuer"}
        await make_provider("half-oidc", "oidc", order=2, config=config)

        response = await client.post(
            "/api/auth/oidc/login", json={"provider": "half-oidc", "id_token": id_token()}
        )

        assert response.status_code == 422
        assert response.json() == {
            "ok": False,
            "code": "VALIDATION_FAILED",
            "errors": {"provider": ["Provider issuer is not configured."]},
        }

    async def test_id_token_nonce_mismatch(self, client, id_token) -> None:
        response = await client.post(
            "/api/auth/oidc/login",
            json={
                "provider": "corp-oidc",
                "id_token": id_token(nonce="issued"),
                "nonce": "expected",
            },
        )

        assert response.status_code == 401
        assert response.json()["errors"] == {"code": ["Nonce mismatch."]}


# ------------------------------------------------------------------ #
# SAML
# ------------------------------------------------------------------ #


class TestSamlRoutes:
    @pytest.fixture
    async def provider(self, make_provider, certificate_pem):
        return await make_provider(
            "corp-saml",
            config={
                "entity_id": "https://idp.example.test/entity",
                "sso_url": "https://idp.example.test/sso",
                "certificate": certificate_pem,
            },
        )

    async def test_sp_metadata(self, client) -> None:
        response = await client.get("/api/auth/saml/metadata")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/samlmetadata+xml")
        assert 'entityID="https://grc.example.test/saml/sp"' in response.text

    async def test_redirect_json(self, client, provider) -> None:
        response = await client.get(
            "/api/auth/saml/redirect",
            params={"provider": "corp-saml", "format": "json", "return": "/dashboard"},
        )

        assert response.status_code == 200
        url = response.json()["redirect"]
        assert url.startswith("https://idp.example.test/sso?")
        query = query_of(url)
        assert "SAMLRequest" in query
        assert query["RelayState"].count(".") == 2

    async def test_redirect_rejects_invalid_config(self, client, make_provider) -> None:
        await make_provider("broken-saml", config={"entity_id": "https://idp.example.test"})

        response = await client.get(
            "/api/auth/saml/redirect", params={"provider": "broken-saml", "format": "json"}
        )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "IDP_PROVIDER_INVALID"
        assert "config.sso_url" in body["meta"]["errors"]

    async def test_acs_without_relay_state(self, client) -> None:
        response = await client.post("/api/auth/saml/acs", data={"SAMLResponse": "abc"})

        assert response.status_code == 303
        query = query_of(response.headers["location"])
        assert query == {"saml": "1", "error": "Missing RelayState in SAML response."}

    async def test_acs_with_forged_relay_state(self, client) -> None:
        response = await client.post(
            "/api/auth/saml/acs", data={"SAMLResponse": "abc", "RelayState": FORGED_STATE}
        )

        assert response.status_code == 303
        assert "expired" in query_of(response.headers["location"])["error"]

    async def test_acs_reports_invalid_response(self, client, provider) -> None:
        started = await client.get(
            "/api/auth/saml/redirect", params={"provider": "corp-saml", "format": "json"}
        )
        relay_state = query_of(started.json()["redirect"])["RelayState"]

        response = await client.post(
            "/api/auth/saml/acs", data={"SAMLResponse": "%%%", "RelayState": relay_state}
        )

        assert response.status_code == 303
        assert query_of(response.headers["location"])["error"] == (
            "Failed to process SAML response: SAMLResponse is not valid base64."
        )

    async def test_acs_success_redirects_to_intended_path(self, app, client, provider) -> None:
        authenticator = AsyncMock(spec=SamlAuthenticator)
        authenticator.consume_relay_state.return_value = StateDescriptor(
            request_id="_req1",
            provider_id=str(provider.id),
            provider_key=provider.key,
            intended_path="/dashboard",
            issued_at=0,
            client_hash=None,
            issuer="grc",
            audience="https://grc.example.test/api/auth/saml/acs",
        )
        authenticator.authenticate.return_value = User(
            id=uuid.uuid4(), email="jane@example.com", name="Jane"
        )
        app.dependency_overrides[get_saml_authenticator] = lambda: authenticator

        response = await client.post(
            "/api/auth/saml/acs", data={"SAMLResponse": "abc", "RelayState": "token"}
        )

        assert response.status_code == 303
        assert query_of(response.headers["location"]) == {"saml": "1", "dest": "/dashboard"}
        payload = authenticator.authenticate.await_args.args[1]
        assert payload == {"SAMLResponse": "abc", "request_id": "_req1"}
