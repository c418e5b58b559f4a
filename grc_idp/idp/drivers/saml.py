"""SAML 2.0 driver.

Config may be given field by field or as IdP metadata XML under
``metadata``/``metadata_xml``; parsed metadata is merged over the explicit
fields. The health probe sends a passive AuthnRequest to the SSO URL
without following redirects and inspects what comes back, including the
error pages ADFS renders with a 200 status.
"""

from __future__ import annotations

import html
import re
from typing import Any

import httpx
import structlog

from grc_idp.auth.saml.authn_request import (
    BuiltAuthnRequest,
    SamlAuthnRequestBuilder,
    ServiceProviderConfig,
)
from grc_idp.auth.saml.metadata import SamlMetadataService
from grc_idp.auth.saml.sp_config import SamlServiceProviderConfigResolver
from grc_idp.core.errors import SamlLibraryError, SamlMetadataError, ValidationFailed
from grc_idp.core.http import http_client
from grc_idp.core.input_validation import is_valid_url
from grc_idp.idp.drivers.base import (
    ConfigErrors,
    IdpDriver,
    add_error,
    normalize_jit_config,
    raise_if_errors,
    require_string,
    require_url,
)
from grc_idp.idp.health import IdpHealthCheckResult

log = structlog.get_logger(__name__)

HEALTH_USER_AGENT = "GRC SAML Health/1.0"

_ADFS_MARKERS = ("msis7012", "msis9605", "relying party trust")
_TAGS = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")
_ERROR_DETAILS = re.compile(r"Error Details?:\s*(\S.*?)(?:\s{2,}|$)", re.IGNORECASE)
_MSIS_CODE = re.compile(r"(MSIS\d{4}[^.]*\.)", re.IGNORECASE)


def body_preview(body: str, limit: int = 512) -> str:
    return body.strip()[:limit]


def extract_adfs_error_detail(body: str) -> str | None:
    """Pull the human readable error out of an ADFS error page, if there is one."""
    if not body:
        return None
    plain = _WHITESPACE.sub(" ", _TAGS.sub(" ", html.unescape(body))).strip()
    if not plain:
        return None
    match = _ERROR_DETAILS.search(plain) or _MSIS_CODE.search(plain)
    if match is None:
        return None
    detail = _WHITESPACE.sub(" ", match.group(1).strip())[:240]
    return f"{detail.rstrip(' .')}." if detail else "Unknown error returned by IdP."


def forwarded_status(headers: httpx.Headers) -> int | None:
    raw = (headers.get("x-ms-forwarded-status-code") or "").strip()
    if not raw.isdigit() or int(raw) < 100:
        return None
    return int(raw)


def evaluate_response(
    status: int, forwarded: int | None, preview: str, adfs_detail: str | None
) -> tuple[bool, str]:
    if status >= 400:
        return False, f"IdP responded with HTTP {status}."
    if forwarded is not None and forwarded >= 400:
        return False, f"IdP forwarded HTTP {forwarded}. Verify relying party configuration."
    if adfs_detail is not None:
        return False, f"IdP returned an error page: {adfs_detail}"
    lowered = preview.lower()
    if any(marker in lowered for marker in _ADFS_MARKERS):
        return False, "IdP rejected the AuthnRequest (relying party trust not configured)."
    if status >= 300:
        return True, "IdP accepted the AuthnRequest and issued a redirect."
    return True, (
        "IdP responded with HTTP 200. Review the response body to confirm the login page "
        "is displayed."
    )


class SamlIdpDriver(IdpDriver):
    key = "saml"

    def __init__(
        self,
        sp_config: SamlServiceProviderConfigResolver,
        metadata: SamlMetadataService | None = None,
        builder: SamlAuthnRequestBuilder | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._sp_config = sp_config
        self._metadata = metadata or SamlMetadataService()
        self._builder = builder or SamlAuthnRequestBuilder()
        self._http = http

    def normalize_config(self, config: dict[str, Any]) -> dict[str, Any]:
        config = dict(config)
        errors: ConfigErrors = {}

        metadata_xml = config.pop("metadata", None) or config.pop("metadata_xml", None)
        config.pop("metadata_xml", None)
        if isinstance(metadata_xml, str) and metadata_xml.strip():
            try:
                config.update(self._metadata.parse(metadata_xml))
            except SamlMetadataError as exc:
                add_error(errors, "config.metadata", str(exc))

        require_string(config, "entity_id", errors, "Entity ID is required.")
        require_url(config, "sso_url", errors, "SSO URL must be a valid URL.")
        certificate = require_string(
            config, "certificate", errors, "Signing certificate is required."
        )
        if certificate and "BEGIN CERTIFICATE" not in certificate:
            add_error(errors, "config.certificate", "Certificate must be a PEM encoded block.")

        slo_url = config.get("slo_url")
        if isinstance(slo_url, str):
            slo_url = slo_url.strip()
            if not slo_url:
                config.pop("slo_url")
            elif not is_valid_url(slo_url):
                add_error(errors, "config.slo_url", "SLO URL must be a valid URL.")
            else:
                config["slo_url"] = slo_url

        if "jit" in config:
            config["jit"] = normalize_jit_config(config["jit"], errors)

        raise_if_errors(errors)
        return config

    async def check_health(self, config: dict[str, Any]) -> IdpHealthCheckResult:
        try:
            normalized = self.normalize_config(config)
        except ValidationFailed as exc:
            return IdpHealthCheckResult.failed("SAML configuration invalid.", {"errors": exc.errors})

        sp = self._sp_config.resolve()
        sp_details = _sp_summary(sp)
        if not sp.entity_id.strip():
            return IdpHealthCheckResult.failed(
                "Service provider entity ID is not configured.", {"sp": sp_details}
            )
        if not is_valid_url(sp.acs_url):
            return IdpHealthCheckResult.failed(
                "Service provider ACS URL is invalid.", {"sp": sp_details}
            )

        try:
            request = self._builder.build(
                sp,
                normalized,
                None,
                private_key=self._sp_config.private_key(),
                passphrase=self._sp_config.private_key_passphrase(),
                is_passive=True,
            )
        except SamlLibraryError as exc:
            return IdpHealthCheckResult.failed(
                "Failed to prepare SAML AuthnRequest.", {"sp": sp_details, "error": str(exc)}
            )

        try:
            async with http_client(self._http) as client:
                response = await client.get(
                    request.url,
                    headers={
                        "User-Agent": HEALTH_USER_AGENT,
                        "Accept": "text/html,application/xml;q=0.9,*/*;q=0.8",
                    },
                    follow_redirects=False,
                )
        except httpx.HTTPError as exc:
            log.warning("idp.saml.health_unreachable", destination=request.destination, error=str(exc))
            return IdpHealthCheckResult.failed(
                "Unable to contact SAML SSO endpoint.",
                {"sp": sp_details, "request": _request_summary(request), "error": str(exc)},
            )

        body = response.text
        preview = body_preview(body)
        adfs_detail = extract_adfs_error_detail(body)
        forwarded = forwarded_status(response.headers)

        response_details: dict[str, Any] = {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body_preview": preview,
        }
        if response.headers.get("location"):
            response_details["location"] = response.headers["location"]
        if forwarded is not None:
            response_details["forwarded_status"] = forwarded
        if adfs_detail is not None:
            response_details["adfs_error_detail"] = adfs_detail

        details = {
            "sp": sp_details,
            "request": {
                **_request_summary(request),
                "encoded_length": len(request.encoded_request),
                "xml_preview": body_preview(request.xml, 256),
            },
            "response": response_details,
        }
        healthy, message = evaluate_response(response.status_code, forwarded, preview, adfs_detail)
        if healthy:
            return IdpHealthCheckResult.healthy(message, details)
        return IdpHealthCheckResult.failed(message, details)


def _sp_summary(sp: ServiceProviderConfig) -> dict[str, Any]:
    return {
        "entity_id": sp.entity_id,
        "acs_url": sp.acs_url,
        "metadata_url": sp.metadata_url,
        "sign_authn_requests": sp.sign_authn_requests,
        "want_assertions_signed": sp.want_assertions_signed,
        "want_assertions_encrypted": sp.want_assertions_encrypted,
    }


def _request_summary(request: BuiltAuthnRequest) -> dict[str, Any]:
    signature = request.parameters.get("Signature")
    return {
        "id": request.id,
        "relay_state": request.relay_state,
        "url": request.url,
        "destination": request.destination,
        "signed": bool(signature),
        "signature_algorithm": request.parameters.get("SigAlg") if signature else None,
    }
