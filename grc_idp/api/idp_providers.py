"""IdP provider administration.

Prefix: /api/admin/idp

Routes:
    GET    /providers                              - List providers (evaluation order)
    POST   /providers                              - Create a provider
    POST   /providers/preview-health               - Health check of an unsaved config
    POST   /providers/saml/metadata/preview        - Parse SAML metadata XML or URL
    GET    /providers/{provider}                   - Show a provider
    PATCH  /providers/{provider}                   - Update a provider
    DELETE /providers/{provider}                   - Delete a provider
    POST   /providers/{provider}/health            - Run and store a health check
    GET    /providers/{provider}/saml/metadata     - Export IdP metadata XML
    GET    /sp                                     - Service provider configuration

``{provider}`` accepts either the UUID or the provider key. Every route
requires the administration bearer token.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from grc_idp.api.deps import get_provider_service, get_sp_resolver
from grc_idp.api.saml import SAML_METADATA_MEDIA_TYPE
from grc_idp.auth.dependencies import require_admin
from grc_idp.auth.saml.metadata import SamlMetadataService, generate_idp_metadata
from grc_idp.auth.saml.sp_config import (
    SamlServiceProviderConfigResolver,
    SamlServiceProviderMetadataBuilder,
)
from grc_idp.core.errors import ProviderLookupFailed, SamlMetadataError, ValidationFailed
from grc_idp.core.http import http_client
from grc_idp.core.input_validation import is_valid_url, trimmed_string
from grc_idp.core.request import RequestContext
from grc_idp.models.idp_provider import IdpDriverKey, IdpProvider
from grc_idp.services.idp_providers import IdpProviderService, provider_payload

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin/idp", tags=["admin"], dependencies=[Depends(require_admin)])

METADATA_DOWNLOAD_TIMEOUT = httpx.Timeout(10.0)


# ------------------------------------------------------------------ #
# Schemas
# ------------------------------------------------------------------ #


class ProviderWrite(BaseModel):
    """Create/update body. Unset fields are left untouched on update."""

    key: str | None = Field(None, max_length=64)
    name: str | None = Field(None, max_length=160)
    driver: str | None = Field(None, max_length=64)
    enabled: bool | str | int | None = None
    evaluation_order: int | str | None = None
    config: dict[str, Any] | None = None
    meta: dict[str, Any] | None = None


class HealthPreview(BaseModel):
    driver: str | None = None
    config: dict[str, Any] | None = None


class MetadataPreview(BaseModel):
    xml: str | None = None
    url: str | None = None


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


async def require_persistence(
    service: IdpProviderService = Depends(get_provider_service),
) -> IdpProviderService:
    if not await service.persistence_available():
        raise ProviderLookupFailed("IDP_PERSISTENCE_DISABLED", 409)
    return service


async def load_provider(
    provider: str,
    service: IdpProviderService = Depends(require_persistence),
) -> IdpProvider:
    record = await service.find_by_id_or_key(provider)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Identity provider not found",
        )
    return record


async def download_metadata(url: str, client: httpx.AsyncClient | None = None) -> str:
    async with http_client(client, follow_redirects=True) as http:
        try:
            response = await http.get(url, timeout=METADATA_DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            log.warning("idp.saml.metadata_download_failed", url=url, error=str(exc))
            raise ValidationFailed.single("url", "Unable to download SAML metadata.") from exc
    return response.text


# ------------------------------------------------------------------ #
# Collection
# ------------------------------------------------------------------ #


@router.get("/providers", summary="List identity providers")
async def list_providers(
    service: IdpProviderService = Depends(require_persistence),
) -> dict[str, Any]:
    providers = await service.all()
    return {
        "ok": True,
        "data": [provider_payload(provider) for provider in providers],
        "meta": {
            "total": len(providers),
            "enabled": sum(1 for provider in providers if provider.enabled),
        },
    }


@router.post("/providers", status_code=status.HTTP_201_CREATED, summary="Create a provider")
async def create_provider(
    body: ProviderWrite,
    service: IdpProviderService = Depends(require_persistence),
    context: RequestContext = Depends(require_admin),
) -> dict[str, Any]:
    provider = await service.create(body.model_dump(exclude_unset=True), context)
    return {"ok": True, "provider": provider_payload(provider)}


@router.post("/providers/preview-health", summary="Health check an unsaved configuration")
async def preview_provider_health(
    body: HealthPreview,
    service: IdpProviderService = Depends(get_provider_service),
) -> dict[str, Any]:
    result = await service.preview_health(body.model_dump(exclude_none=True))
    return {"ok": True, "health": result.as_dict()}


@router.post("/providers/saml/metadata/preview", summary="Parse SAML IdP metadata")
async def preview_saml_metadata(body: MetadataPreview) -> dict[str, Any]:
    xml = trimmed_string(body.xml)
    url = trimmed_string(body.url)
    if xml is None and url is None:
        raise ValidationFailed.single("xml", "Provide SAML metadata XML or a metadata URL.")

    if xml is None:
        if not is_valid_url(url):
            raise ValidationFailed.single("url", "Metadata URL must be a valid URL.")
        xml = await download_metadata(url)

    try:
        config = SamlMetadataService().parse(xml)
    except SamlMetadataError as exc:
        raise ValidationFailed.single("xml", str(exc)) from exc
    return {"ok": True, "config": config}


# ------------------------------------------------------------------ #
# Single provider
# ------------------------------------------------------------------ #


@router.get("/providers/{provider}", summary="Show a provider")
async def show_provider(record: IdpProvider = Depends(load_provider)) -> dict[str, Any]:
    return {"ok": True, "provider": provider_payload(record)}


@router.patch("/providers/{provider}", summary="Update a provider")
async def update_provider(
    body: ProviderWrite,
    record: IdpProvider = Depends(load_provider),
    service: IdpProviderService = Depends(require_persistence),
    context: RequestContext = Depends(require_admin),
) -> dict[str, Any]:
    updated = await service.update(record, body.model_dump(exclude_unset=True), context)
    return {"ok": True, "provider": provider_payload(updated)}


@router.delete("/providers/{provider}", summary="Delete a provider")
async def delete_provider(
    record: IdpProvider = Depends(load_provider),
    service: IdpProviderService = Depends(require_persistence),
    context: RequestContext = Depends(require_admin),
) -> dict[str, Any]:
    await service.delete(record, context)
    return {"ok": True}


@router.post("/providers/{provider}/health", summary="Run a stored provider health check")
async def check_provider_health(
    record: IdpProvider = Depends(load_provider),
    service: IdpProviderService = Depends(require_persistence),
    context: RequestContext = Depends(require_admin),
) -> dict[str, Any]:
    result = await service.check_health(record, context)
    return {"ok": True, "health": result.as_dict(), "provider": provider_payload(record)}


@router.get("/providers/{provider}/saml/metadata", summary="Export IdP metadata")
async def export_saml_metadata(record: IdpProvider = Depends(load_provider)) -> Response:
    if record.driver.lower() != IdpDriverKey.SAML:
        raise ValidationFailed.single("provider", "Provider driver does not support SAML metadata.")
    try:
        xml = generate_idp_metadata(dict(record.config or {}))
    except SamlMetadataError as exc:
        raise ValidationFailed.single("config", str(exc)) from exc
    return Response(
        content=xml,
        media_type=SAML_METADATA_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{record.key}-metadata.xml"'},
    )


# ------------------------------------------------------------------ #
# Service provider
# ------------------------------------------------------------------ #


@router.get("/sp", summary="SAML service provider configuration")
async def service_provider_config(
    sp_resolver: SamlServiceProviderConfigResolver = Depends(get_sp_resolver),
) -> dict[str, Any]:
    sp = sp_resolver.resolve()
    try:
        metadata_xml: str | None = SamlServiceProviderMetadataBuilder().build(sp)
    except SamlMetadataError as exc:
        log.warning("idp.saml.sp_metadata_unavailable", error=str(exc))
        metadata_xml = None

    return {
        "ok": True,
        "sp": {
            "entity_id": sp.entity_id,
            "acs_url": sp.acs_url,
            "metadata_url": sp.metadata_url,
            "sign_authn_requests": sp.sign_authn_requests,
            "want_assertions_signed": sp.want_assertions_signed,
            "want_assertions_encrypted": sp.want_assertions_encrypted,
            "certificate_configured": bool(sp.certificate and sp.certificate.strip()),
        },
        "metadata_xml": metadata_xml,
    }
