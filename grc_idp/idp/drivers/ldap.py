"""LDAP / Active Directory driver."""

from __future__ import annotations

from typing import Any

import structlog

from grc_idp.auth.jit import coerce_bool
from grc_idp.auth.ldap.client import USERNAME_PLACEHOLDER, LdapClient
from grc_idp.core.errors import LdapError, ValidationFailed
from grc_idp.idp.drivers.base import (
    ConfigErrors,
    IdpDriver,
    add_error,
    coerce_port,
    normalize_jit_config,
    raise_if_errors,
    require_string,
)
from grc_idp.idp.health import IdpHealthCheckResult

log = structlog.get_logger(__name__)

BIND_STRATEGIES = ("service", "direct")
USER_IDENTIFIER_SOURCES = ("email_attribute", "name_attribute", "username_attribute")


class LdapIdpDriver(IdpDriver):
    key = "ldap"

    def __init__(self, client: LdapClient) -> None:
        self._client = client

    def normalize_config(self, config: dict[str, Any]) -> dict[str, Any]:
        config = dict(config)
        errors: ConfigErrors = {}

        for flag in ("use_ssl", "start_tls", "require_tls"):
            config[flag] = coerce_bool(config.get(flag)) or False

        require_string(config, "host", errors, "Host is required.")
        if config.get("port") in (None, ""):
            config["port"] = 636 if config["use_ssl"] else 389
        coerce_port(config, "port", errors)
        require_string(config, "base_dn", errors, "Base DN is required.")

        self._normalize_bind_strategy(config, errors)
        self._normalize_timeout(config, errors)
        self._normalize_attributes(config, errors)
        self._normalize_user_discovery(config, errors)

        if "jit" in config:
            config["jit"] = normalize_jit_config(config["jit"], errors)

        if config["require_tls"] and not (config["use_ssl"] or config["start_tls"]):
            add_error(
                errors, "config.require_tls", "TLS is required; enable either use_ssl or start_tls."
            )

        raise_if_errors(errors)
        return config

    async def check_health(self, config: dict[str, Any]) -> IdpHealthCheckResult:
        try:
            normalized = self.normalize_config(config)
        except ValidationFailed as exc:
            return IdpHealthCheckResult.failed("LDAP configuration invalid.", {"errors": exc.errors})

        summary = {
            "host": normalized.get("host"),
            "port": normalized.get("port"),
            "base_dn": normalized.get("base_dn"),
            "bind_strategy": normalized.get("bind_strategy"),
            "timeout": normalized.get("timeout"),
            "tls": {
                "use_ssl": normalized["use_ssl"],
                "start_tls": normalized["start_tls"],
                "require_tls": normalized["require_tls"],
            },
        }
        try:
            await self._client.check_connection(normalized)
        except LdapError as exc:
            log.warning("idp.ldap.health_failed", host=normalized.get("host"), error=str(exc))
            return IdpHealthCheckResult.failed(
                "LDAP connection failed.", {"error": str(exc), "connection": summary}
            )
        return IdpHealthCheckResult.healthy("LDAP connection succeeded.", summary)

    @staticmethod
    def _normalize_bind_strategy(config: dict[str, Any], errors: ConfigErrors) -> None:
        strategy = "service"
        if "bind_strategy" in config:
            raw = config["bind_strategy"]
            if not isinstance(raw, str) or not raw.strip():
                add_error(errors, "config.bind_strategy", "Bind strategy must be a non-empty string.")
            elif raw.strip().lower() in BIND_STRATEGIES:
                strategy = raw.strip().lower()
            else:
                add_error(
                    errors,
                    "config.bind_strategy",
                    f"Bind strategy must be one of: {', '.join(BIND_STRATEGIES)}.",
                )
        config["bind_strategy"] = strategy

        if strategy == "service":
            require_string(
                config,
                "bind_dn",
                errors,
                "Bind DN is required when using service bind strategy.",
            )
            require_string(
                config,
                "bind_password",
                errors,
                "Bind password is required when using service bind strategy.",
            )
            return

        config.pop("bind_dn", None)
        config.pop("bind_password", None)
        if "user_dn_template" not in config:
            add_error(
                errors,
                "config.user_dn_template",
                "User DN template is required for direct bind strategy.",
            )
            return
        template = config["user_dn_template"]
        if not isinstance(template, str) or not template.strip():
            add_error(
                errors, "config.user_dn_template", "User DN template must be a non-empty string."
            )
            return
        if USERNAME_PLACEHOLDER not in template:
            add_error(
                errors,
                "config.user_dn_template",
                'User DN template must include the placeholder "{{username}}".',
            )
            return
        config["user_dn_template"] = template.strip()

    @staticmethod
    def _normalize_timeout(config: dict[str, Any], errors: ConfigErrors) -> None:
        if "timeout" not in config:
            return
        timeout = config["timeout"]
        if isinstance(timeout, str) and timeout.strip().isdigit():
            timeout = int(timeout.strip())
        if not isinstance(timeout, int) or isinstance(timeout, bool) or not 1 <= timeout <= 120:
            add_error(
                errors, "config.timeout", "Timeout must be an integer between 1 and 120 seconds."
            )
            return
        config["timeout"] = timeout

    @staticmethod
    def _normalize_attributes(config: dict[str, Any], errors: ConfigErrors) -> None:
        for key, default, message in (
            ("email_attribute", "mail", "Email attribute is required."),
            ("name_attribute", "cn", "Display name attribute is required."),
            ("username_attribute", "uid", "Username attribute must be a non-empty string."),
        ):
            value = config.get(key, default)
            if not isinstance(value, str) or not value.strip():
                add_error(errors, f"config.{key}", message)
                config[key] = default
            else:
                config[key] = value.strip().lower()

        photo = config.get("photo_attribute")
        if isinstance(photo, str) and photo.strip():
            config["photo_attribute"] = photo.strip().lower()
        else:
            config.pop("photo_attribute", None)

    @staticmethod
    def _normalize_user_discovery(config: dict[str, Any], errors: ConfigErrors) -> None:
        if "user_identifier_source" in config:
            raw = config["user_identifier_source"]
            source = raw.strip().lower() if isinstance(raw, str) else ""
            if source not in USER_IDENTIFIER_SOURCES:
                add_error(errors, "config.user_identifier_source", "Select a username attribute source.")
                source = "username_attribute"
            attribute = config.get(source)
            if not isinstance(attribute, str) or not attribute.strip():
                add_error(
                    errors,
                    "config.user_identifier_source",
                    "Selected username attribute is unavailable.",
                )
                return
            config["user_identifier_source"] = source
            config["user_filter"] = f"({attribute.strip().lower()}={USERNAME_PLACEHOLDER})"
            return

        user_filter = config.get("user_filter")
        if not isinstance(user_filter, str) or not user_filter.strip():
            user_filter = f"(uid={USERNAME_PLACEHOLDER})"
        if USERNAME_PLACEHOLDER not in user_filter:
            add_error(
                errors,
                "config.user_filter",
                'User filter must include the placeholder "{{username}}".',
            )
        config["user_filter"] = user_filter.strip()
