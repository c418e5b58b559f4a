"""Generic OpenID Connect driver.

Health checks download the discovery document and then probe the token
endpoint with a client-credentials grant. The probe only proves that the
endpoint recognises the client; many IdPs refuse the grant itself, which is
treated as healthy or as a warning depending on the error code.
"""

from __future__ import annotations

import base64
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from grc_idp.core.errors import ValidationFailed
from grc_idp.core.http import http_client
from grc_idp.core.input_validation import is_valid_url
from grc_idp.idp.drivers.base import (
    ConfigErrors,
    IdpDriver,
    add_error,
    coerce_string_list,
    normalize_jit_config,
    raise_if_errors,
    require_string,
    require_url,
)
from grc_idp.idp.health import IdpHealthCheckResult

log = structlog.get_logger(__name__)

_SOFT_400_ERRORS = frozenset({"unauthorized_client", "unsupported_grant_type", "invalid_request"})


class _DiscoveryUnavailable(Exception):
    pass


class OidcIdpDriver(IdpDriver):
    key = "oidc"

    def __init__(self, http: httpx.AsyncClient | None = None) -> None:
        self._http = http

    def normalize_config(self, config: dict[str, Any]) -> dict[str, Any]:
        config = dict(config)
        errors: ConfigErrors = {}
        self._normalize_into(config, errors)
        raise_if_errors(errors)
        return config

    def _normalize_into(self, config: dict[str, Any], errors: ConfigErrors) -> None:
        require_url(config, "issuer", errors, "Issuer must be a valid URL.")
        require_string(config, "client_id", errors, "Client ID is required.")
        require_string(config, "client_secret", errors, "Client secret is required.")

        scopes = coerce_string_list(config, "scopes", errors)
        if scopes:
            config["scopes"] = list(dict.fromkeys(scopes))

        redirects = coerce_string_list(
            config, "redirect_uris", errors, "Redirect URIs must be an array of URLs."
        )
        if redirects:
            valid = []
            for index, url in enumerate(redirects):
                if not is_valid_url(url):
                    add_error(errors, f"config.redirect_uris.{index}", "Redirect URI must be a valid URL.")
                    continue
                valid.append(url)
            config["redirect_uris"] = valid

        if "jit" in config:
            config["jit"] = normalize_jit_config(config["jit"], errors)
        else:
            config["jit"] = {"create_users": True, "default_roles": [], "role_templates": []}

    async def check_health(self, config: dict[str, Any]) -> IdpHealthCheckResult:
        try:
            normalized = self.normalize_config(config)
        except ValidationFailed as exc:
            return IdpHealthCheckResult.failed("OIDC configuration invalid.", {"errors": exc.errors})
        return await self._probe(normalized)

    async def _probe(self, config: dict[str, Any]) -> IdpHealthCheckResult:
        issuer = config["issuer"]
        details: dict[str, Any] = {"issuer": issuer, "scopes": config.get("scopes", [])}

        try:
            discovery = await self._fetch_discovery(issuer)
        except _DiscoveryUnavailable as exc:
            return IdpHealthCheckResult.failed(
                "Failed to download OIDC discovery metadata.", {**details, "error": str(exc)}
            )

        details["discovery"] = {
            name: discovery.get(name)
            for name in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")
        }

        token_endpoint = discovery.get("token_endpoint")
        if not isinstance(token_endpoint, str) or not token_endpoint.strip():
            return IdpHealthCheckResult.warning(
                "Discovery metadata loaded, but the token endpoint was not provided.", details
            )

        status, message, probe = await self._probe_client_credentials(
            token_endpoint.strip(),
            config["client_id"],
            config["client_secret"],
            config.get("scopes", []),
        )
        details["token_probe"] = probe
        if status == "invalid":
            return IdpHealthCheckResult.failed(message, details)
        if status == "warning":
            return IdpHealthCheckResult.warning(message, details)
        return IdpHealthCheckResult.healthy(message, details)

    async def _fetch_discovery(self, issuer: str) -> dict[str, Any]:
        endpoint = f"{issuer.rstrip('/')}/.well-known/openid-configuration"
        try:
            async with http_client(self._http) as client:
                response = await client.get(endpoint, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            log.warning("idp.oidc.discovery_unreachable", endpoint=endpoint, error=str(exc))
            raise _DiscoveryUnavailable("Unable to reach discovery endpoint.") from exc

        if response.status_code >= 400:
            log.warning("idp.oidc.discovery_error", endpoint=endpoint, status=response.status_code)
            raise _DiscoveryUnavailable(
                f"Discovery endpoint returned HTTP {response.status_code}."
            )
        try:
            document = response.json()
        except ValueError:
            document = None
        if not isinstance(document, dict):
            raise _DiscoveryUnavailable("Discovery document response was not valid JSON.")
        return document

    async def _probe_client_credentials(
        self,
        token_endpoint: str,
        client_id: str,
        client_secret: str,
        scopes: list[str],
    ) -> tuple[str, str, dict[str, Any]]:
        probe_scope = next((scope for scope in scopes if ".default" in scope), "openid")
        basic = base64.b64encode(
            f"{quote(client_id, safe='')}:{quote(client_secret, safe='')}".encode()
        ).decode("ascii")
        attempts = (
            (
                "basic",
                {"Accept": "application/json", "Authorization": f"Basic {basic}"},
                {"grant_type": "client_credentials", "scope": probe_scope},
            ),
            (
                "post",
                {"Accept": "application/json"},
                {
                    "grant_type": "client_credentials",
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "scope": probe_scope,
                },
            ),
        )

        async with http_client(self._http) as client:
            for mode, headers, form in attempts:
                try:
                    response = await client.post(token_endpoint, headers=headers, data=form)
                except httpx.HTTPError as exc:
                    log.warning(
                        "idp.oidc.token_probe_failed",
                        endpoint=token_endpoint,
                        mode=mode,
                        error=str(exc),
                    )
                    return (
                        "warning",
                        "Unable to reach the token endpoint during validation.",
                        {"mode": mode, "error": str(exc)},
                    )

                status = response.status_code
                error = _oauth_error(response)

                if status == 401 or error == "invalid_client":
                    if mode == "basic":
                        continue
                    return (
                        "invalid",
                        "Token endpoint rejected the provided client credentials.",
                        {"status": status, "error": error or response.text},
                    )

                if status >= 500:
                    return (
                        "warning",
                        "Token endpoint returned an unexpected server error.",
                        {"status": status},
                    )

                if status == 400:
                    if error == "invalid_scope":
                        return (
                            "ok",
                            "Token endpoint rejected the client-credentials scope (invalid_scope) "
                            "but interactive authorization_code flows are still valid.",
                            {"status": status, "error": error, "mode": mode},
                        )
                    if error in _SOFT_400_ERRORS:
                        return (
                            "warning",
                            "Token endpoint responded, but additional configuration may be "
                            "required (check scopes or grant type).",
                            {"status": status, "error": error, "mode": mode},
                        )
                    return (
                        "warning",
                        "Token endpoint returned an unexpected response.",
                        {"status": status, "error": error or response.text},
                    )

                return (
                    "ok",
                    "OIDC metadata and client credentials validated.",
                    {"status": status, "error": error},
                )

        return (
            "invalid",
            "Token endpoint rejected the provided client credentials.",
            {"mode": "post"},
        )


def _oauth_error(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None
