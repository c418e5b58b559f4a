"""Microsoft Entra ID: OIDC with a tenant-derived issuer."""

from __future__ import annotations

import re
from typing import Any

from grc_idp.core.errors import ValidationFailed
from grc_idp.idp.drivers.base import ConfigErrors, add_error, raise_if_errors, require_string
from grc_idp.idp.drivers.oidc import OidcIdpDriver
from grc_idp.idp.health import IdpHealthCheckResult

_TENANT_ID = re.compile(r"^[0-9a-f-]{8,}$", re.IGNORECASE)

ENTRA_ISSUER_TEMPLATE = "https://login.microsoftonline.com/{tenant}/v2.0"


class EntraIdpDriver(OidcIdpDriver):
    key = "entra"

    def normalize_config(self, config: dict[str, Any]) -> dict[str, Any]:
        config = dict(config)
        errors: ConfigErrors = {}
        tenant_id = require_string(config, "tenant_id", errors, "Tenant ID is required.")
        if tenant_id and not _TENANT_ID.match(tenant_id):
            add_error(errors, "config.tenant_id", "Tenant ID must be a valid GUID or identifier.")
        raise_if_errors(errors)

        if config.get("issuer") is None:
            config["issuer"] = ENTRA_ISSUER_TEMPLATE.format(tenant=tenant_id)

        normalized = super().normalize_config(config)
        normalized["tenant_id"] = tenant_id
        return normalized

    async def check_health(self, config: dict[str, Any]) -> IdpHealthCheckResult:
        try:
            normalized = self.normalize_config(config)
        except ValidationFailed as exc:
            return IdpHealthCheckResult.failed("Entra configuration invalid.", {"errors": exc.errors})

        result = await self._probe(normalized)
        return result.with_details({"tenant_id": normalized["tenant_id"]})
