"""SAML AuthnRequest construction for the HTTP-Redirect binding.

Used both for interactive logins and for passive health probes. The
request asks the IdP to answer with the HTTP-POST binding at our ACS.
"""

from __future__ import annotations

import base64
import uuid
import zlib
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote, urlencode

import structlog
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree

from grc_idp.core.errors import SamlLibraryError
from grc_idp.core.input_validation import is_valid_url

log = structlog.get_logger(__name__)

NS_SAMLP = "urn:oasis:names:tc:SAML:2.0:protocol"
NS_SAML = "urn:oasis:names:tc:SAML:2.0:assertion"
BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
NAMEID_UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"
SIG_ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"


@dataclass(frozen=True)
class ServiceProviderConfig:
    entity_id: str
    acs_url: str
    metadata_url: str
    sign_authn_requests: bool = False
    want_assertions_signed: bool = True
    want_assertions_encrypted: bool = False
    certificate: str | None = None


@dataclass(frozen=True)
class BuiltAuthnRequest:
    id: str
    relay_state: str | None
    url: str
    destination: str
    encoded_request: str
    xml: str
    parameters: dict[str, str]

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "relay_state": self.relay_state,
            "url": self.url,
            "destination": self.destination,
            "encoded_request": self.encoded_request,
            "xml": self.xml,
            "parameters": dict(self.parameters),
        }


def _deflate_and_encode(data: str) -> str:
    """Raw DEFLATE + base64, as the redirect binding requires."""
    compressed = zlib.compress(data.encode("utf-8"), 9)[2:-4]  # strip zlib header/trailer
    return base64.b64encode(compressed).decode("ascii")


def inflate_request(encoded: str) -> str:
    """Reverse of the redirect encoding. Handy for diagnostics and tests."""
    return zlib.decompress(base64.b64decode(encoded), -15).decode("utf-8")


def new_request_id() -> str:
    # NCName: must not start with a digit
    return f"_{uuid.uuid4().hex}"


class SamlAuthnRequestBuilder:
    """Builds (and optionally signs) redirect-binding AuthnRequests."""

    def build(
        self,
        sp: ServiceProviderConfig,
        idp: dict[str, Any],
        relay_state: str | None,
        *,
        private_key: str | None = None,
        passphrase: str | None = None,
        request_id: str | None = None,
        is_passive: bool = False,
    ) -> BuiltAuthnRequest:
        destination = idp.get("sso_url")
        if not is_valid_url(destination):
            raise SamlLibraryError("SAML SSO URL is invalid.")
        if not sp.entity_id.strip():
            raise SamlLibraryError("SAML service provider entity ID is not configured.")
        if not is_valid_url(sp.acs_url):
            raise SamlLibraryError("SAML service provider ACS URL is invalid.")

        identifier = request_id or new_request_id()
        xml = self._authn_request_xml(
            identifier, sp.entity_id, sp.acs_url, destination, is_passive
        )
        encoded = _deflate_and_encode(xml)

        relay = relay_state.strip() if relay_state is not None else None
        relay = relay or None

        params: dict[str, str] = {"SAMLRequest": encoded}
        if relay is not None:
            params["RelayState"] = relay

        if sp.sign_authn_requests:
            params["SigAlg"] = SIG_ALG_RSA_SHA256
            params["Signature"] = self._sign_redirect(
                self._redirect_signature_payload(encoded, relay, SIG_ALG_RSA_SHA256),
                private_key,
                passphrase,
            )

        query = urlencode(params, quote_via=quote)
        separator = "&" if "?" in destination else "?"

        log.debug(
            "auth.saml.authn_request_built",
            request_id=identifier,
            destination=destination,
            signed=sp.sign_authn_requests,
            passive=is_passive,
        )
        return BuiltAuthnRequest(
            id=identifier,
            relay_state=relay,
            url=f"{destination}{separator}{query}",
            destination=destination,
            encoded_request=encoded,
            xml=xml,
            parameters=params,
        )

    @staticmethod
    def _authn_request_xml(
        identifier: str,
        entity_id: str,
        acs_url: str,
        destination: str,
        is_passive: bool,
    ) -> str:
        root = etree.Element(
            f"{{{NS_SAMLP}}}AuthnRequest",
            nsmap={"samlp": NS_SAMLP, "saml": NS_SAML},
        )
        root.set("ID", identifier)
        root.set("Version", "2.0")
        root.set("IssueInstant", datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"))
        root.set("Destination", destination)
        root.set("ProtocolBinding", BINDING_HTTP_POST)
        root.set("AssertionConsumerServiceURL", acs_url)
        root.set("ForceAuthn", "false")
        root.set("IsPassive", "true" if is_passive else "false")

        issuer = etree.SubElement(root, f"{{{NS_SAML}}}Issuer")
        issuer.text = entity_id

        policy = etree.SubElement(root, f"{{{NS_SAMLP}}}NameIDPolicy")
        policy.set("Format", NAMEID_UNSPECIFIED)
        policy.set("AllowCreate", "false")

        return etree.tostring(root, encoding="unicode")

    @staticmethod
    def _redirect_signature_payload(encoded: str, relay_state: str | None, sig_alg: str) -> str:
        parts = [f"SAMLRequest={quote(encoded, safe='')}"]
        if relay_state:
            parts.append(f"RelayState={quote(relay_state, safe='')}")
        parts.append(f"SigAlg={quote(sig_alg, safe='')}")
        return "&".join(parts)

    @staticmethod
    def _sign_redirect(payload: str, private_key: str | None, passphrase: str | None) -> str:
        if private_key is None or not private_key.strip():
            raise SamlLibraryError("SAML SP private key is required to sign AuthnRequests.")

        try:
            key = serialization.load_pem_private_key(
                private_key.encode("utf-8"),
                password=passphrase.encode("utf-8") if passphrase else None,
            )
        except (ValueError, TypeError) as exc:
            raise SamlLibraryError("Unable to load SAML SP private key for signing.") from exc

        if not isinstance(key, rsa.RSAPrivateKey):
            raise SamlLibraryError("Unable to load SAML SP private key for signing.")

        signature = key.sign(payload.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")
