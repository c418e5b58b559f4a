"""Service-provider side of the SAML trust: our entity id, ACS URL and metadata."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from lxml import etree

from grc_idp.auth.saml.authn_request import BINDING_HTTP_POST, ServiceProviderConfig
from grc_idp.auth.saml.metadata import (
    PROTOCOL_ENUMERATION,
    append_key_descriptor,
    certificate_body,
)
from grc_idp.auth.saml.xml import NS
from grc_idp.config import Settings
from grc_idp.core.errors import SamlMetadataError
from grc_idp.core.input_validation import is_valid_url, trimmed_string

NAMEID_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
_ENCRYPTION_METHODS = (
    "http://www.w3.org/2001/04/xmlenc#aes256-cbc",
    "http://www.w3.org/2001/04/xmlenc#rsa-oaep-mgf1p",
)


class SamlServiceProviderConfigResolver:
    """Derives the SP configuration from settings, defaulting URLs from APP_URL."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def resolve(self) -> ServiceProviderConfig:
        s = self._settings
        base = s.base_url or "http://localhost"
        return ServiceProviderConfig(
            entity_id=trimmed_string(s.saml_sp_entity_id) or f"{base}/saml/sp",
            acs_url=trimmed_string(s.saml_sp_acs_url) or f"{base}/api/auth/saml/acs",
            metadata_url=(
                trimmed_string(s.saml_sp_metadata_url) or f"{base}/api/auth/saml/metadata"
            ),
            sign_authn_requests=s.saml_sign_authn_requests,
            want_assertions_signed=s.saml_want_assertions_signed,
            want_assertions_encrypted=s.saml_want_assertions_encrypted,
            certificate=trimmed_string(s.saml_sp_certificate),
        )

    def private_key(self) -> str | None:
        key = self._settings.saml_sp_private_key
        return key.get_secret_value() if key is not None else None

    def private_key_passphrase(self) -> str | None:
        passphrase = self._settings.saml_sp_private_key_passphrase
        return passphrase.get_secret_value() if passphrase is not None else None


class SamlServiceProviderMetadataBuilder:
    def build(self, sp: ServiceProviderConfig, valid_until: datetime | None = None) -> str:
        entity_id = sp.entity_id.strip()
        if not entity_id:
            raise SamlMetadataError("SAML service provider entity ID is not configured.")
        acs_url = sp.acs_url.strip()
        if not is_valid_url(acs_url):
            raise SamlMetadataError("SAML service provider ACS URL is invalid.")

        certificate = None
        if sp.certificate is not None and sp.certificate.strip():
            certificate = certificate_body(sp.certificate)
            if not certificate:
                raise SamlMetadataError("SAML service provider certificate is invalid.")

        expires = valid_until or datetime.now(UTC) + timedelta(days=7)

        root = etree.Element(
            f"{{{NS['md']}}}EntityDescriptor", nsmap={"md": NS["md"], "ds": NS["ds"]}
        )
        root.set("entityID", entity_id)
        root.set("validUntil", expires.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"))

        descriptor = etree.SubElement(root, f"{{{NS['md']}}}SPSSODescriptor")
        descriptor.set("protocolSupportEnumeration", PROTOCOL_ENUMERATION)
        descriptor.set("AuthnRequestsSigned", "true" if sp.sign_authn_requests else "false")
        descriptor.set("WantAssertionsSigned", "true" if sp.want_assertions_signed else "false")

        if certificate is not None:
            append_key_descriptor(descriptor, certificate, "signing")
            if sp.want_assertions_encrypted:
                encryption = append_key_descriptor(descriptor, certificate, "encryption")
                for algorithm in _ENCRYPTION_METHODS:
                    method = etree.SubElement(encryption, f"{{{NS['md']}}}EncryptionMethod")
                    method.set("Algorithm", algorithm)

        name_id_format = etree.SubElement(descriptor, f"{{{NS['md']}}}NameIDFormat")
        name_id_format.text = NAMEID_EMAIL

        acs = etree.SubElement(descriptor, f"{{{NS['md']}}}AssertionConsumerService")
        acs.set("Binding", BINDING_HTTP_POST)
        acs.set("Location", acs_url)
        acs.set("index", "0")
        acs.set("isDefault", "true")

        return etree.tostring(
            root, xml_declaration=True, encoding="UTF-8", pretty_print=True
        ).decode("utf-8")
