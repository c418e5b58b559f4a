"""Fixtures for the federated authenticator tests: SAML documents and SP settings."""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta

import pytest

from grc_idp.auth.saml.authn_request import ServiceProviderConfig

SP_ENTITY_ID = "https://grc.example.test/saml/sp"
ACS_URL = "https://grc.example.test/api/auth/saml/acs"
IDP_ENTITY_ID = "https://idp.example.test/entity"


def _instant(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


@pytest.fixture
def sp() -> ServiceProviderConfig:
    return ServiceProviderConfig(
        entity_id=SP_ENTITY_ID,
        acs_url=ACS_URL,
        metadata_url="https://grc.example.test/api/auth/saml/metadata",
    )


@pytest.fixture
def idp_config(certificate_pem) -> dict:
    return {
        "entity_id": IDP_ENTITY_ID,
        "sso_url": "https://idp.example.test/sso",
        "certificate": certificate_pem,
    }


@pytest.fixture
def stub_verifier():
    """Signature check that trusts any element carrying a ds:Signature child."""
    return lambda root, element, certificate: True


@pytest.fixture
def saml_response():
    """Build a base64 SAMLResponse; keyword overrides adjust single fields."""

    def _build(
        *,
        request_id: str = "_req1",
        audience: str = SP_ENTITY_ID,
        destination: str = ACS_URL,
        issuer: str = IDP_ENTITY_ID,
        status: str = "urn:oasis:names:tc:SAML:2.0:status:Success",
        name_id: str = "jane@example.com",
        attributes: dict[str, list[str]] | None = None,
        now: datetime | None = None,
        signed: bool = True,
        assertions: int = 1,
    ) -> str:
        now = now or datetime.now(UTC)
        not_before = _instant(now - timedelta(minutes=5))
        not_after = _instant(now + timedelta(minutes=5))
        attributes = attributes if attributes is not None else {"email": [name_id]}

        attribute_xml = "".join(
            f'<saml:Attribute Name="{name}">'
            + "".join(f"<saml:AttributeValue>{value}</saml:AttributeValue>" for value in values)
            + "</saml:Attribute>"
            for name, values in attributes.items()
        )
        signature = "<ds:Signature><ds:SignedInfo/></ds:Signature>" if signed else ""
        assertion_xml = "".join(
            f"""<saml:Assertion ID="_assertion{index}" Version="2.0" IssueInstant="{_instant(now)}">
    <saml:Issuer>{issuer}</saml:Issuer>
    {signature}
    <saml:Subject>
      <saml:NameID>{name_id}</saml:NameID>
      <saml:SubjectConfirmation Method="urn:oasis:names:tc:SAML:2.0:cm:bearer">
        <saml:SubjectConfirmationData Recipient="{ACS_URL}" InResponseTo="{request_id}"
            NotOnOrAfter="{not_after}"/>
      </saml:SubjectConfirmation>
    </saml:Subject>
    <saml:Conditions NotBefore="{not_before}" NotOnOrAfter="{not_after}">
      <saml:AudienceRestriction><saml:Audience>{audience}</saml:Audience></saml:AudienceRestriction>
    </saml:Conditions>
    <saml:AuthnStatement SessionIndex="_session{index}" AuthnInstant="{_instant(now)}"/>
    <saml:AttributeStatement>{attribute_xml}</saml:AttributeStatement>
  </saml:Assertion>"""
            for index in range(assertions)
        )
        document = f"""<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion"
    xmlns:ds="http://www.w3.org/2000/09/xmldsig#"
    ID="_response1" Version="2.0" IssueInstant="{_instant(now)}"
    Destination="{destination}" InResponseTo="{request_id}">
  <saml:Issuer>{issuer}</saml:Issuer>
  <samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>
  {assertion_xml}
</samlp:Response>"""
        return base64.b64encode(document.encode("utf-8")).decode("ascii")

    return _build
