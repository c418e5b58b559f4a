"""IdP metadata import and export.

parse() turns an IdP's EntityDescriptor into the config keys the SAML
driver stores (entity_id, sso_url, certificate, slo_url).
generate_idp_metadata() goes the other way, so a stored provider can be
exported and handed to another SP.
"""

from __future__ import annotations

import re
import textwrap
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from lxml import etree

from grc_idp.auth.saml.xml import NS, UnsafeXmlError, local_name, parse_xml_safe
from grc_idp.core.errors import SamlMetadataError
from grc_idp.core.input_validation import is_valid_url

log = structlog.get_logger(__name__)

BINDING_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
BINDING_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
PROTOCOL_ENUMERATION = "urn:oasis:names:tc:SAML:2.0:protocol"

_PEM_MARKERS = re.compile(r"-----(BEGIN|END) CERTIFICATE-----", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def certificate_body(certificate: str) -> str:
    """Base64 body of a certificate with PEM armor and whitespace removed."""
    return _WHITESPACE.sub("", _PEM_MARKERS.sub("", certificate))


def format_certificate(certificate: str) -> str:
    """Normalise a bare or armored certificate into PEM with 64-char lines."""
    body = certificate_body(certificate)
    if not body:
        raise SamlMetadataError("SAML metadata certificate is empty.")
    lines = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN CERTIFICATE-----\n{lines}\n-----END CERTIFICATE-----"


def _iso_utc(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class SamlMetadataService:
    def parse(self, metadata_xml: str) -> dict[str, str]:
        metadata_xml = (metadata_xml or "").strip()
        if not metadata_xml:
            raise SamlMetadataError("SAML metadata must not be empty.")

        try:
            root = parse_xml_safe(metadata_xml.encode("utf-8"))
        except UnsafeXmlError as exc:
            raise SamlMetadataError("Unable to parse SAML metadata XML.") from exc

        descriptor = self._entity_descriptor(root)
        entity_id = (descriptor.get("entityID") or "").strip()
        if not entity_id:
            raise SamlMetadataError("SAML metadata missing EntityDescriptor entityID.")

        parsed = {
            "entity_id": entity_id,
            "sso_url": self._sso_url(descriptor),
            "certificate": self._certificate(descriptor),
        }
        slo_url = self._slo_url(descriptor)
        if slo_url is not None:
            parsed["slo_url"] = slo_url
        return parsed

    @staticmethod
    def _entity_descriptor(root: etree._Element) -> etree._Element:
        if local_name(root) == "EntityDescriptor":
            return root
        matches = root.findall(".//md:EntityDescriptor", NS)
        if not matches:
            raise SamlMetadataError("SAML metadata missing EntityDescriptor.")
        return matches[0]

    @staticmethod
    def _pick_location(services: list[etree._Element]) -> str | None:
        for binding in (BINDING_REDIRECT, BINDING_POST):
            for service in services:
                location = (service.get("Location") or "").strip()
                if (service.get("Binding") or "").strip() == binding and location:
                    return location
        for service in services:
            location = (service.get("Location") or "").strip()
            if location:
                return location
        return None

    def _sso_url(self, descriptor: etree._Element) -> str:
        services = descriptor.findall("md:IDPSSODescriptor/md:SingleSignOnService", NS)
        if not services:
            raise SamlMetadataError("SAML metadata missing SingleSignOnService.")
        location = self._pick_location(services)
        if location is None or not is_valid_url(location):
            raise SamlMetadataError("SAML metadata SingleSignOnService URL is invalid.")
        return location

    def _slo_url(self, descriptor: etree._Element) -> str | None:
        services = descriptor.findall("md:IDPSSODescriptor/md:SingleLogoutService", NS)
        location = self._pick_location(services)
        if location is None or not is_valid_url(location):
            return None
        return location

    @staticmethod
    def _certificate(descriptor: etree._Element) -> str:
        candidates: list[tuple[str, str]] = []
        for key_descriptor in descriptor.findall("md:IDPSSODescriptor/md:KeyDescriptor", NS):
            use = (key_descriptor.get("use") or "").strip()
            for node in key_descriptor.iterfind(".//ds:X509Certificate", NS):
                value = (node.text or "").strip()
                if value:
                    candidates.append((use, value))

        if not candidates:
            raise SamlMetadataError("SAML metadata missing X509Certificate.")

        selected = next((value for use, value in candidates if use == "signing"), candidates[0][1])
        return format_certificate(selected)


def generate_idp_metadata(
    config: dict[str, Any], valid_until: datetime | None = None
) -> str:
    """Render IdP metadata for a stored SAML provider config."""
    entity_id = config.get("entity_id")
    sso_url = config.get("sso_url")
    certificate = config.get("certificate")
    slo_url = config.get("slo_url")

    if not isinstance(entity_id, str) or not entity_id.strip():
        raise SamlMetadataError("SAML entity ID is required.")
    if not is_valid_url(sso_url):
        raise SamlMetadataError("SAML SSO URL must be a valid URL.")
    if not isinstance(certificate, str) or not certificate_body(certificate):
        raise SamlMetadataError("SAML signing certificate is required.")

    expires = valid_until or datetime.now(UTC) + timedelta(days=7)

    root = etree.Element(
        f"{{{NS['md']}}}EntityDescriptor", nsmap={"md": NS["md"], "ds": NS["ds"]}
    )
    root.set("entityID", entity_id.strip())
    root.set("validUntil", _iso_utc(expires))

    idp = etree.SubElement(root, f"{{{NS['md']}}}IDPSSODescriptor")
    idp.set("protocolSupportEnumeration", PROTOCOL_ENUMERATION)
    append_key_descriptor(idp, certificate_body(certificate), "signing")

    if is_valid_url(slo_url):
        slo = etree.SubElement(idp, f"{{{NS['md']}}}SingleLogoutService")
        slo.set("Binding", BINDING_REDIRECT)
        slo.set("Location", slo_url)

    sso = etree.SubElement(idp, f"{{{NS['md']}}}SingleSignOnService")
    sso.set("Binding", BINDING_REDIRECT)
    sso.set("Location", sso_url)

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True).decode(
        "utf-8"
    )


def append_key_descriptor(parent: etree._Element, body: str, use: str) -> etree._Element:
    key_descriptor = etree.SubElement(parent, f"{{{NS['md']}}}KeyDescriptor")
    key_descriptor.set("use", use)
    key_info = etree.SubElement(key_descriptor, f"{{{NS['ds']}}}KeyInfo")
    x509_data = etree.SubElement(key_info, f"{{{NS['ds']}}}X509Data")
    x509_cert = etree.SubElement(x509_data, f"{{{NS['ds']}}}X509Certificate")
    x509_cert.text = body
    return key_descriptor
