"""SAML Response validation for the HTTP-POST binding.

SamlResponseValidator decodes the posted SAMLResponse, checks the XML-DSig
signature against the IdP certificate, and applies the protocol checks an
SP owes an IdP response:

- status is Success and exactly one assertion is present
- Destination equals our ACS URL and InResponseTo matches the request we sent
- Conditions NotBefore / NotOnOrAfter hold within the allowed clock skew
- AudienceRestriction names our SP entity id
- a bearer SubjectConfirmation is addressed to our ACS and still valid

Parsing and signature work is CPU bound, so the whole check runs in the
default executor.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
import xmlsec
from lxml import etree

from grc_idp.auth.saml.authn_request import ServiceProviderConfig
from grc_idp.auth.saml.metadata import format_certificate
from grc_idp.auth.saml.xml import NS, UnsafeXmlError, find_text, local_name, parse_xml_safe
from grc_idp.core.errors import SamlLibraryError, SamlMetadataError

log = structlog.get_logger(__name__)

ALLOWED_CLOCK_SKEW = timedelta(seconds=120)

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
CM_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"
NS_XENC = "http://www.w3.org/2001/04/xmlenc#"

# (document root, signed element, PEM certificate) -> signature valid
SignatureVerifier = Callable[[etree._Element, etree._Element, str], bool]


@dataclass(frozen=True)
class SamlAttribute:
    name: str
    friendly_name: str | None
    values: tuple[str, ...]


@dataclass(frozen=True)
class ValidatedAssertion:
    """What the authenticator needs from an accepted response."""

    response_issuer: str | None
    assertion_issuer: str | None
    name_id: str | None
    session_index: str | None
    assertion_id: str | None
    attributes: tuple[SamlAttribute, ...] = field(default_factory=tuple)
    signed_element: str = "Assertion"


def xmlsec_signature_verifier(
    root: etree._Element, element: etree._Element, certificate_pem: str
) -> bool:
    """Verify the enveloped signature that is a direct child of ``element``.

    The signature must reference ``element`` by its own ID, otherwise a
    valid signature elsewhere in the document could vouch for unsigned
    content.
    """
    signature = element.find("ds:Signature", NS)
    if signature is None:
        return False

    element_id = element.get("ID")
    reference = signature.find("ds:SignedInfo/ds:Reference", NS)
    if not element_id or reference is None or reference.get("URI") != f"#{element_id}":
        log.warning("auth.saml.signature_reference_mismatch", element=local_name(element))
        return False

    try:
        xmlsec.tree.add_ids(root, ["ID"])
        ctx = xmlsec.SignatureContext()
        ctx.key = xmlsec.Key.from_memory(
            certificate_pem.encode("utf-8"),
            xmlsec.constants.KeyDataFormatCertPem,
        )
        ctx.verify(signature)
    except xmlsec.Error as exc:
        log.warning("auth.saml.signature_invalid", element=local_name(element), error=str(exc))
        return False
    return True


def decode_saml_response(encoded: str) -> bytes:
    compact = "".join(encoded.split())
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SamlLibraryError("SAMLResponse is not valid base64.") from exc


def _parse_instant(value: str, attribute: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise SamlLibraryError(f"Invalid {attribute} timestamp in SAML response.") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _same_url(left: str, right: str) -> bool:
    return left.strip().rstrip("/") == right.strip().rstrip("/")


class SamlResponseValidator:
    def __init__(
        self,
        *,
        require_signed_assertion: bool = False,
        verifier: SignatureVerifier | None = None,
        private_key: str | None = None,
        private_key_passphrase: str | None = None,
    ) -> None:
        self._require_signed_assertion = require_signed_assertion
        self._verifier = verifier or xmlsec_signature_verifier
        self._private_key = private_key
        self._passphrase = private_key_passphrase

    async def validate(
        self,
        encoded_response: str,
        sp: ServiceProviderConfig,
        idp_config: dict[str, Any],
        expected_request_id: str | None = None,
        now: datetime | None = None,
    ) -> ValidatedAssertion:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self.validate_sync,
            encoded_response,
            sp,
            idp_config,
            expected_request_id,
            now,
        )

    def validate_sync(
        self,
        encoded_response: str,
        sp: ServiceProviderConfig,
        idp_config: dict[str, Any],
        expected_request_id: str | None = None,
        now: datetime | None = None,
    ) -> ValidatedAssertion:
        now = now or datetime.now(UTC)
        certificate = self._idp_certificate(idp_config)
        idp_entity_id = (idp_config.get("entity_id") or "").strip() or None

        try:
            root = parse_xml_safe(decode_saml_response(encoded_response))
        except UnsafeXmlError as exc:
            raise SamlLibraryError("Unable to parse SAML response XML.") from exc

        if local_name(root) != "Response" or etree.QName(root).namespace != NS["samlp"]:
            raise SamlLibraryError("SAML document is not a Response.")
        self._reject_duplicate_ids(root)
        self._check_status(root)

        # Response first: decrypting an assertion rewrites the signed tree.
        signed_element = None
        if not self._require_signed_assertion and self._signature_valid(root, root, certificate):
            signed_element = "Response"

        assertion = self._single_assertion(root)
        if signed_element is None and self._signature_valid(root, assertion, certificate):
            signed_element = "Assertion"

        if signed_element is None:
            if self._require_signed_assertion:
                raise SamlLibraryError("The SAML assertion is not signed with the IdP certificate.")
            raise SamlLibraryError("No valid signature found on the SAML response or assertion.")

        self._check_destination(root, sp)
        self._check_in_response_to(root, expected_request_id)

        response_issuer = find_text(root, "saml:Issuer")
        assertion_issuer = find_text(assertion, "saml:Issuer")
        self._check_issuer(assertion_issuer, idp_entity_id, "assertion")
        self._check_issuer(response_issuer, idp_entity_id, "response")

        self._check_conditions(assertion, sp, now)
        self._check_subject_confirmation(assertion, sp, expected_request_id, now)

        authn_statement = assertion.find("saml:AuthnStatement", NS)
        session_index = None
        if authn_statement is not None:
            session_index = (authn_statement.get("SessionIndex") or "").strip() or None

        validated = ValidatedAssertion(
            response_issuer=response_issuer or idp_entity_id,
            assertion_issuer=assertion_issuer or idp_entity_id,
            name_id=find_text(assertion, "saml:Subject/saml:NameID"),
            session_index=session_index,
            assertion_id=(assertion.get("ID") or "").strip() or None,
            attributes=self._attributes(assertion),
            signed_element=signed_element,
        )
        log.debug(
            "auth.saml.response_validated",
            issuer=validated.assertion_issuer,
            signed_element=signed_element,
            attribute_count=len(validated.attributes),
        )
        return validated

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @staticmethod
    def _idp_certificate(idp_config: dict[str, Any]) -> str:
        raw = idp_config.get("certificate")
        if not isinstance(raw, str):
            raise SamlLibraryError("SAML provider certificate is not configured.")
        try:
            return format_certificate(raw)
        except SamlMetadataError as exc:
            raise SamlLibraryError("SAML provider certificate is not configured.") from exc

    @staticmethod
    def _reject_duplicate_ids(root: etree._Element) -> None:
        ids = list(root.xpath("//@ID"))
        if len(ids) != len(set(ids)):
            raise SamlLibraryError("SAML response contains duplicate ID attributes.")

    @staticmethod
    def _check_status(root: etree._Element) -> None:
        status = root.find("samlp:Status/samlp:StatusCode", NS)
        if status is None:
            raise SamlLibraryError("SAML response is missing a status code.")
        value = (status.get("Value") or "").strip()
        if value != STATUS_SUCCESS:
            message = find_text(root, "samlp:Status/samlp:StatusMessage")
            detail = f"{value} ({message})" if message else value
            raise SamlLibraryError(f"SAML response status is not Success: {detail}")

    def _single_assertion(self, root: etree._Element) -> etree._Element:
        assertions = root.findall("saml:Assertion", NS)
        encrypted = root.findall("saml:EncryptedAssertion", NS)
        if len(assertions) + len(encrypted) != 1:
            raise SamlLibraryError("SAML response must contain exactly one assertion.")
        if assertions:
            return assertions[0]
        return self._decrypt_assertion(encrypted[0])

    def _decrypt_assertion(self, encrypted: etree._Element) -> etree._Element:
        if not self._private_key:
            raise SamlLibraryError(
                "SAML assertion is encrypted but no SP private key is configured."
            )
        data = encrypted.find(f"{{{NS_XENC}}}EncryptedData")
        if data is None:
            raise SamlLibraryError("Encrypted SAML assertion is missing EncryptedData.")

        try:
            manager = xmlsec.KeysManager()
            manager.add_key(
                xmlsec.Key.from_memory(
                    self._private_key.encode("utf-8"),
                    xmlsec.constants.KeyDataFormatPem,
                    self._passphrase,
                )
            )
            decrypted = xmlsec.EncryptionContext(manager).decrypt(data)
        except xmlsec.Error as exc:
            raise SamlLibraryError("Unable to decrypt SAML assertion.") from exc

        if not isinstance(decrypted, etree._Element) or local_name(decrypted) != "Assertion":
            raise SamlLibraryError("Unable to decrypt SAML assertion.")
        return decrypted

    def _signature_valid(
        self, root: etree._Element, element: etree._Element, certificate: str
    ) -> bool:
        if element.find("ds:Signature", NS) is None:
            return False
        return self._verifier(root, element, certificate)

    # ------------------------------------------------------------------
    # Protocol checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_destination(root: etree._Element, sp: ServiceProviderConfig) -> None:
        destination = (root.get("Destination") or "").strip()
        if destination and not _same_url(destination, sp.acs_url):
            raise SamlLibraryError(
                f"SAML response Destination {destination} does not match the ACS URL."
            )

    @staticmethod
    def _check_in_response_to(root: etree._Element, expected: str | None) -> None:
        in_response_to = (root.get("InResponseTo") or "").strip()
        if expected and in_response_to and in_response_to != expected:
            raise SamlLibraryError(
                "The InResponseTo of the SAML response does not match the request ID."
            )

    @staticmethod
    def _check_issuer(issuer: str | None, expected: str | None, label: str) -> None:
        if issuer is None or expected is None:
            return
        if issuer != expected:
            raise SamlLibraryError(f"Invalid issuer in the SAML {label}.")

    @staticmethod
    def _check_conditions(
        assertion: etree._Element, sp: ServiceProviderConfig, now: datetime
    ) -> None:
        conditions = assertion.find("saml:Conditions", NS)
        if conditions is None:
            return

        not_before = conditions.get("NotBefore")
        if not_before and _parse_instant(not_before, "NotBefore") > now + ALLOWED_CLOCK_SKEW:
            raise SamlLibraryError("SAML assertion is not yet valid.")

        not_on_or_after = conditions.get("NotOnOrAfter")
        if (
            not_on_or_after
            and _parse_instant(not_on_or_after, "NotOnOrAfter") + ALLOWED_CLOCK_SKEW <= now
        ):
            raise SamlLibraryError("SAML assertion has expired.")

        audiences = [
            (node.text or "").strip()
            for node in conditions.findall("saml:AudienceRestriction/saml:Audience", NS)
            if (node.text or "").strip()
        ]
        if audiences and not any(_same_url(aud, sp.entity_id) for aud in audiences):
            raise SamlLibraryError(f"{sp.entity_id} is not a valid audience for this response.")

    @staticmethod
    def _check_subject_confirmation(
        assertion: etree._Element,
        sp: ServiceProviderConfig,
        expected_request_id: str | None,
        now: datetime,
    ) -> None:
        for confirmation in assertion.findall("saml:Subject/saml:SubjectConfirmation", NS):
            if (confirmation.get("Method") or "").strip() != CM_BEARER:
                continue
            data = confirmation.find("saml:SubjectConfirmationData", NS)
            if data is None:
                continue

            recipient = (data.get("Recipient") or "").strip()
            if not recipient or not _same_url(recipient, sp.acs_url):
                continue

            in_response_to = (data.get("InResponseTo") or "").strip()
            if expected_request_id and in_response_to and in_response_to != expected_request_id:
                continue

            not_on_or_after = data.get("NotOnOrAfter")
            if not not_on_or_after:
                continue
            if _parse_instant(not_on_or_after, "NotOnOrAfter") + ALLOWED_CLOCK_SKEW <= now:
                continue

            not_before = data.get("NotBefore")
            if not_before and _parse_instant(not_before, "NotBefore") > now + ALLOWED_CLOCK_SKEW:
                continue

            return

        raise SamlLibraryError("A valid SubjectConfirmation was not found on this response.")

    @staticmethod
    def _attributes(assertion: etree._Element) -> tuple[SamlAttribute, ...]:
        collected: list[SamlAttribute] = []
        for attribute in assertion.iterfind("saml:AttributeStatement/saml:Attribute", NS):
            name = (attribute.get("Name") or "").strip()
            if not name:
                continue
            friendly = (attribute.get("FriendlyName") or "").strip() or None
            values = tuple(
                (node.text or "").strip()
                for node in attribute.findall("saml:AttributeValue", NS)
                if (node.text or "").strip()
            )
            collected.append(SamlAttribute(name=name, friendly_name=friendly, values=values))
        return tuple(collected)
