"""Hardened XML parsing for untrusted SAML documents.

defusedxml runs first as a gate: it rejects DTDs, entity declarations and
external references. The document is then parsed again with lxml, which is
what xmlsec operates on, using a parser that never resolves entities or
touches the network.
"""

from __future__ import annotations

from xml.etree.ElementTree import ParseError

import defusedxml.ElementTree as DefusedET
from defusedxml import DefusedXmlException
from lxml import etree

NS = {
    "md": "urn:oasis:names:tc:SAML:2.0:metadata",
    "saml": "urn:oasis:names:tc:SAML:2.0:assertion",
    "samlp": "urn:oasis:names:tc:SAML:2.0:protocol",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
}


class UnsafeXmlError(ValueError):
    """Document is not well-formed or uses forbidden XML constructs."""


def _lxml_parser() -> etree.XMLParser:
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        remove_comments=False,
        huge_tree=False,
        load_dtd=False,
    )


def parse_xml_safe(xml_bytes: bytes) -> etree._Element:
    try:
        DefusedET.fromstring(xml_bytes, forbid_dtd=True)
    except (DefusedXmlException, ParseError) as exc:
        raise UnsafeXmlError(str(exc)) from exc

    try:
        return etree.fromstring(xml_bytes, parser=_lxml_parser())
    except etree.XMLSyntaxError as exc:
        raise UnsafeXmlError(str(exc)) from exc


def local_name(element: etree._Element) -> str:
    return etree.QName(element).localname


def find_text(element: etree._Element, path: str) -> str | None:
    """Stripped text of the first match of ``path``, or None."""
    node = element.find(path, NS)
    if node is None or node.text is None:
        return None
    return node.text.strip() or None
