"""Tests for LDAP entry normalisation, filters and the LDAP authenticator."""

from __future__ import annotations

import pytest
from ldap3 import MOCK_SYNC, SIMPLE, Connection, Server

from grc_idp.auth.ldap.authenticator import LdapAuthenticator, resolve_display_name
from grc_idp.auth.ldap.client import Ldap3Client, build_filter, build_user_dn
from grc_idp.auth.ldap.normalizer import LdapEntry, LdapEntryNormalizer
from grc_idp.core.errors import LdapError, ValidationFailed

LDAP_CONFIG = {
    "host": "ldap.example.test",
    "base_dn": "ou=people,dc=example,dc=test",
    "bind_dn": "cn=svc,dc=example,dc=test",
    "bind_password": "svc-pass",
    "user_filter": "(uid={{username}})",
    "jit": {
        "default_roles": ["viewer"],
        "role_templates": [
            {
                "claim": "memberOf",
                "values": ["cn=grc-admins,ou=groups,dc=example,dc=test"],
                "roles": ["admin"],
            }
        ],
    },
}


class TestNormalizer:
    def test_lowercases_and_trims(self) -> None:
        entry = LdapEntryNormalizer().normalize(
            {
                "dn": " uid=jdoe,dc=example ",
                "count": 1,
                "Mail": " JDoe@Example.com ",
                "memberOf": ["cn=a", " ", 7],
                "jpegPhoto": b"\x00",
            }
        )

        assert entry.dn == "uid=jdoe,dc=example"
        assert entry.attributes == {"mail": ["JDoe@Example.com"], "memberof": ["cn=a"]}
        assert entry.first("MAIL") == "JDoe@Example.com"
        assert entry.values("missing") is None

    def test_missing_dn(self) -> None:
        with pytest.raises(LdapError, match="distinguished name"):
            LdapEntryNormalizer().normalize({"mail": "x@example.com"})


class TestTemplates:
    def test_filter_escapes_username(self) -> None:
        assert build_filter(LDAP_CONFIG, "j*)(uid=*") == "(uid=j\\2a\\29\\28uid=\\2a)"

    def test_user_dn_escapes_username(self) -> None:
        config = {"user_dn_template": "uid={{username}},ou=people,dc=example"}
        assert build_user_dn(config, "doe, jane") == "uid=doe\\, jane,ou=people,dc=example"

    def test_missing_templates(self) -> None:
        with pytest.raises(LdapError, match="User filter"):
            build_filter({}, "jdoe")
        with pytest.raises(LdapError, match="User DN template"):
            build_user_dn({"user_dn_template": " "}, "jdoe")

    def test_display_name_fallbacks(self) -> None:
        entry = LdapEntry("uid=jdoe", {"givenname": ["Jane"], "sn": ["Doe"]})
        assert resolve_display_name({}, entry, "jane@example.com") == "Jane Doe"
        named = LdapEntry("uid=jdoe", {"fullname": ["J. Doe"], "cn": ["jdoe"]})
        assert resolve_display_name({"name_attribute": "fullName"}, named, "x") == "J. Doe"


class TestLdapAuthenticator:
    @pytest.fixture
    async def provider(self, make_provider):
        return await make_provider("corp-ldap", "ldap", config=LDAP_CONFIG)

    @pytest.fixture
    def authenticator(self, db_session, audit, ldap_client) -> LdapAuthenticator:
        ldap_client.add_user(
            "jdoe",
            "correct horse",
            "uid=jdoe,ou=people,dc=example,dc=test",
            mail="JDoe@Example.com",
            cn="Jane Doe",
            memberOf=["cn=grc-admins,ou=groups,dc=example,dc=test"],
        )
        return LdapAuthenticator(db_session, audit, ldap_client)

    async def test_success_provisions_user(
        self, authenticator, provider, roles, request_context, audit
    ) -> None:
        user = await authenticator.authenticate(
            provider, {"username": " jdoe ", "password": "correct horse"}, request_context
        )

        assert user.email == "jdoe@example.com"
        assert user.name == "Jane Doe"
        assert sorted(role.id for role in user.roles) == ["admin", "viewer"]
        kwargs = audit.log.await_args.kwargs
        assert kwargs["action"] == "auth.ldap.login"
        assert kwargs["meta"]["user_dn"] == "uid=jdoe,ou=people,dc=example,dc=test"

    async def test_wrong_password(self, authenticator, provider, request_context, audit) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(
                provider, {"username": "jdoe", "password": "nope"}, request_context
            )

        assert exc_info.value.status_code == 401
        assert exc_info.value.errors == {"username": ["Invalid credentials."]}
        audit.log.assert_not_awaited()

    async def test_directory_failure_is_misconfiguration(
        self, authenticator, provider, request_context, ldap_client
    ) -> None:
        ldap_client.connection_error = LdapError("Unable to connect to LDAP host: timeout")

        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(
                provider, {"username": "jdoe", "password": "correct horse"}, request_context
            )

        assert exc_info.value.status_code == 422
        assert "misconfiguration" in exc_info.value.first_message()

    @pytest.mark.parametrize(
        "payload,field",
        [({"password": "x"}, "username"), ({"username": "jdoe", "password": ""}, "password")],
    )
    async def test_required_fields(
        self, authenticator, provider, request_context, payload, field
    ) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            await authenticator.authenticate(provider, payload, request_context)
        assert list(exc_info.value.errors) == [field]

    async def test_missing_email_attribute(
        self, authenticator, provider, request_context, ldap_client
    ) -> None:
        ldap_client.add_user("nomail", "pw", "uid=nomail,dc=example", cn="No Mail")
        with pytest.raises(ValidationFailed, match="missing required email"):
            await authenticator.authenticate(
                provider, {"username": "nomail", "password": "pw"}, request_context
            )

    async def test_rejects_other_drivers(
        self, authenticator, make_provider, request_context
    ) -> None:
        oidc = await make_provider("corp-oidc", "oidc")
        with pytest.raises(ValidationFailed, match="does not support LDAP"):
            await authenticator.authenticate(
                oidc, {"username": "jdoe", "password": "x"}, request_context
            )


class TestLdap3ClientAgainstMockDirectory:
    """Drives the ldap3 code path with ldap3's in-memory MOCK_SYNC strategy."""

    @pytest.fixture
    def mock_connection(self, monkeypatch) -> Connection:
        connection = Connection(
            Server("ldap.example.test"),
            authentication=SIMPLE,
            client_strategy=MOCK_SYNC,
            raise_exceptions=False,
        )
        connection.strategy.add_entry(
            "cn=svc,dc=example,dc=test", {"objectClass": "person", "userPassword": "svc-pass"}
        )
        connection.strategy.add_entry(
            "uid=jdoe,ou=people,dc=example,dc=test",
            {
                "objectClass": "person",
                "uid": "jdoe",
                "mail": "jdoe@example.com",
                "userPassword": "correct horse",
            },
        )
        monkeypatch.setattr(Ldap3Client, "_connect", staticmethod(lambda config: connection))
        return connection

    async def test_service_bind_search_and_rebind(self, mock_connection) -> None:
        entry = await Ldap3Client().authenticate(LDAP_CONFIG, "jdoe", "correct horse")

        assert entry.dn == "uid=jdoe,ou=people,dc=example,dc=test"
        assert entry.first("mail") == "jdoe@example.com"

    async def test_wrong_user_password(self, mock_connection) -> None:
        with pytest.raises(LdapError, match="Invalid LDAP credentials."):
            await Ldap3Client().authenticate(LDAP_CONFIG, "jdoe", "wrong")

    async def test_unknown_user(self, mock_connection) -> None:
        with pytest.raises(LdapError, match="LDAP user not found."):
            await Ldap3Client().authenticate(LDAP_CONFIG, "ghost", "x")

    async def test_service_bind_rejected(self, mock_connection) -> None:
        config = dict(LDAP_CONFIG, bind_password="wrong")
        with pytest.raises(LdapError, match="Service bind failed"):
            await Ldap3Client().check_connection(config)
