"""
Shared test fixtures for pytest.

- settings: Test environment configuration (in-memory cache, SQLite URL)
- engine / db_session: SQLite database with the full schema
- cache: In-memory cache backend
- audit: AuditLogger mock recording log() calls
- request_context: Client metadata used by authenticators and audits
- make_provider: Helper to insert IdpProvider rows
- rsa_key / private_key_pem / certificate_pem: Throwaway signing material
- ldap_client: In-memory LdapClient double
- oidc_idp / oidc_http / id_token: Fake OIDC provider over httpx.MockTransport
"""

from __future__ import annotations

import json
import socket
import time
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import grc_idp.models  # noqa: F401 - registers all models with Base.metadata
from grc_idp.auth.ldap.client import INVALID_CREDENTIALS
from grc_idp.auth.ldap.normalizer import LdapEntry, LdapEntryNormalizer
from grc_idp.cache.backend import InMemoryCacheBackend
from grc_idp.config import Environment, Settings, get_settings
from grc_idp.core.audit import AuditLogger
from grc_idp.core.errors import LdapError
from grc_idp.core.request import RequestContext
from grc_idp.database import Base
from grc_idp.models.idp_provider import IdpProvider
from grc_idp.models.user import Role

TEST_SECRET = "test-secret-key-for-federation-tests"
TEST_APP_URL = "https://grc.example.test"


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Auto-skip integration tests when Redis is unavailable
# ------------------------------------------------------------------ #


def _redis_is_available() -> bool:
    """Return True if Redis is reachable on localhost:6379."""
    try:
        with socket.create_connection(("localhost", 6379), timeout=1):
            return True
    except OSError:
        return False


_REDIS_AVAILABLE: bool | None = None


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-skip tests marked ``@pytest.mark.integration`` when Redis is down."""
    global _REDIS_AVAILABLE  # noqa: PLW0603
    if _REDIS_AVAILABLE is None:
        _REDIS_AVAILABLE = _redis_is_available()

    if _REDIS_AVAILABLE:
        return

    skip_marker = pytest.mark.skip(reason="Redis unavailable, skipping integration test")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment=Environment.TEST,
        secret_key=TEST_SECRET,  # type: ignore[arg-type]
        app_url=TEST_APP_URL,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="",
        admin_api_token="admin-token",  # type: ignore[arg-type]
    )


# ------------------------------------------------------------------ #
# Database
# ------------------------------------------------------------------ #


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    # StaticPool keeps the single in-memory database alive across sessions
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def roles(db_session: AsyncSession) -> list[Role]:
    seeded = [
        Role(id="admin", name="Administrator"),
        Role(id="auditor", name="Auditor"),
        Role(id="viewer", name="Viewer"),
    ]
    db_session.add_all(seeded)
    await db_session.flush()
    return seeded


@pytest.fixture
def make_provider(db_session: AsyncSession):
    """Insert a provider row directly, bypassing the provider service."""

    async def _make(
        key: str,
        driver: str = "saml",
        *,
        order: int = 1,
        enabled: bool = True,
        config: dict[str, Any] | None = None,
    ) -> IdpProvider:
        provider = IdpProvider(
            id=uuid.uuid4(),
            key=key,
            name=key.replace("-", " ").title(),
            driver=driver,
            enabled=enabled,
            evaluation_order=order,
            config=config or {},
        )
        db_session.add(provider)
        await db_session.flush()
        return provider

    return _make


# ------------------------------------------------------------------ #
# Collaborators
# ------------------------------------------------------------------ #


@pytest.fixture
def cache() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture
def audit() -> AsyncMock:
    return AsyncMock(spec=AuditLogger)


@pytest.fixture
def request_context() -> RequestContext:
    return RequestContext(ip="203.0.113.10", ua="pytest-agent/1.0")


# ------------------------------------------------------------------ #
# Signing material
# ------------------------------------------------------------------ #


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_key: rsa.RSAPrivateKey) -> str:
    return rsa_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def certificate_pem(rsa_key: rsa.RSAPrivateKey) -> str:
    """Self-signed certificate for ``rsa_key``."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "idp.example.test")])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(rsa_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(rsa_key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


# ------------------------------------------------------------------ #
# LDAP
# ------------------------------------------------------------------ #


class FakeLdapClient:
    """LdapClient double: a dict of username -> (password, entry)."""

    def __init__(self) -> None:
        self.users: dict[str, tuple[str, LdapEntry]] = {}
        self.connection_error: LdapError | None = None
        self.checked: list[dict[str, Any]] = []

    def add_user(self, username: str, password: str, dn: str, **attributes: Any) -> None:
        entry = LdapEntryNormalizer().normalize({"dn": dn, **attributes})
        self.users[username] = (password, entry)

    async def check_connection(self, config: dict[str, Any]) -> None:
        self.checked.append(config)
        if self.connection_error is not None:
            raise self.connection_error

    async def authenticate(self, config: dict[str, Any], username: str, password: str) -> LdapEntry:
        if self.connection_error is not None:
            raise self.connection_error
        stored = self.users.get(username)
        if stored is None or stored[0] != password:
            raise LdapError(INVALID_CREDENTIALS)
        return stored[1]


@pytest.fixture
def ldap_client() -> FakeLdapClient:
    return FakeLdapClient()



# ------------------------------------------------------------------ #
# OIDC
# ------------------------------------------------------------------ #

OIDC_ISSUER = "https://login.example.test/tenant"
OIDC_CLIENT_ID = "grc-client"


class FakeOidcProvider:
    """httpx handler serving discovery, JWKS and the token endpoint."""

    def __init__(self, jwks: dict) -> None:
        self.jwks = jwks
        self.calls: list[str] = []
        self.token_forms: list[dict[str, str]] = []
        self.token_response: dict = {}
        self.fail_discovery = False
        self.discovery_status = 503
        self.jwks_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        if path.endswith("/.well-known/openid-configuration"):
            if self.fail_discovery:
                return httpx.Response(self.discovery_status)
            return httpx.Response(
                200,
                json={
                    "issuer": OIDC_ISSUER,
                    "authorization_endpoint": f"{OIDC_ISSUER}/authorize",
                    "token_endpoint": f"{OIDC_ISSUER}/token",
                    "jwks_uri": f"{OIDC_ISSUER}/keys",
                },
            )
        if path.endswith("/keys"):
            return httpx.Response(self.jwks_status, json=self.jwks)
        if path.endswith("/token"):
            self.token_forms.append(dict(parse_qsl(request.content.decode())))
            return httpx.Response(200, json=self.token_response)
        return httpx.Response(404)

    def count(self, suffix: str) -> int:
        return sum(1 for path in self.calls if path.endswith(suffix))


@pytest.fixture(scope="session")
def oidc_jwks(rsa_key) -> dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(rsa_key.public_key()))
    jwk["kid"] = "k1"
    jwk["use"] = "sig"
    return {"keys": [jwk]}


@pytest.fixture
def oidc_idp(oidc_jwks) -> FakeOidcProvider:
    return FakeOidcProvider(oidc_jwks)


@pytest.fixture
async def oidc_http(oidc_idp):
    async with httpx.AsyncClient(transport=httpx.MockTransport(oidc_idp)) as client:
        yield client


@pytest.fixture
def oidc_provider_config() -> dict:
    return {
        "issuer": OIDC_ISSUER,
        "client_id": OIDC_CLIENT_ID,
        "client_secret": "s3cret",
        "scopes": ["openid", "email", "profile"],
    }


@pytest.fixture
def id_token(private_key_pem):
    """Sign an ID token with the fixture RSA key; keyword overrides claims."""

    def _sign(*, key: str | None = None, kid: str = "k1", **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": OIDC_ISSUER,
            "aud": OIDC_CLIENT_ID,
            "sub": "subject-1",
            "iat": now,
            "exp": now + 300,
            "email": "jane@example.com",
            "name": "Jane Doe",
        }
        claims.update(overrides)
        claims = {name: value for name, value in claims.items() if value is not None}
        return jwt.encode(
            claims, key or private_key_pem, algorithm="RS256", headers={"kid": kid}
        )

    return _sign
