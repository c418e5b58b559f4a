"""Domain exceptions.

Authenticators and services raise ValidationFailed for anything the caller
can act on (bad input, rejected credentials, misconfigured provider). The
protocol-internal errors below never leave their authenticator; they are
translated into ValidationFailed at that boundary.
"""

from __future__ import annotations


class ValidationFailed(Exception):
    """Field-scoped validation or authentication failure.

    ``errors`` maps a field name (``email``, ``config.issuer``, ``SAMLResponse``)
    to one or more human-readable messages. ``status_code`` is 422 for
    validation problems and 401 for rejected authentication.
    """

    def __init__(self, errors: dict[str, list[str]], status_code: int = 422) -> None:
        self.errors = {field: list(messages) for field, messages in errors.items()}
        self.status_code = status_code
        super().__init__(self.first_message() or "Validation failed.")

    @classmethod
    def single(cls, field: str, message: str, status_code: int = 422) -> ValidationFailed:
        return cls({field: [message]}, status_code=status_code)

    def first_message(self) -> str | None:
        for messages in self.errors.values():
            if messages:
                return messages[0]
        return None

    @property
    def is_authentication_failure(self) -> bool:
        return self.status_code == 401


class ConfigurationError(RuntimeError):
    """Fatal wiring problem (missing persistence, broken registry)."""


class LdapError(Exception):
    """Raised by LDAP clients for bind, search or connection failures."""


class OidcAuthenticationError(Exception):
    """ID token or token-endpoint problem during an OIDC login."""


class SamlLibraryError(Exception):
    """SAML response could not be parsed, verified or accepted."""


class SamlMetadataError(ValueError):
    """IdP metadata XML is missing required elements or cannot be parsed."""


class SamlStateError(Exception):
    """RelayState token is malformed, forged, expired or replayed."""


class OidcProviderError(RuntimeError):
    """Provider configuration, discovery or JWKS retrieval failure."""


class OidcProviderUnavailable(OidcProviderError):
    """Discovery or JWKS endpoint timed out, was unreachable or answered 5xx."""


class ProviderLookupFailed(Exception):
    """A login route could not use the requested provider.

    Rendered as ``{"ok": false, "code": code, "meta": meta}`` with ``status_code``.
    """

    def __init__(self, code: str, status_code: int, meta: dict | None = None) -> None:
        self.code = code
        self.status_code = status_code
        self.meta = meta or {}
        super().__init__(code)
