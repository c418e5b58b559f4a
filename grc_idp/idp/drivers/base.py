"""IdP driver contract and the config-normalisation helpers drivers share.

A driver turns the raw ``config`` submitted for a provider into the
normalised dict that gets stored, and can probe the IdP for health. The
helpers below collect problems into an ``errors`` mapping keyed by
``config.<field>`` instead of raising on the first one, so an admin sees
every problem in a single response.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from grc_idp.auth.jit import coerce_bool
from grc_idp.core.errors import ValidationFailed
from grc_idp.core.input_validation import is_valid_url
from grc_idp.idp.health import IdpHealthCheckResult

ConfigErrors = dict[str, list[str]]

REQUIRED = "This field is required."


def add_error(errors: ConfigErrors, path: str, message: str) -> None:
    errors.setdefault(path, []).append(message)


def raise_if_errors(errors: ConfigErrors) -> None:
    if errors:
        raise ValidationFailed(errors)


def require_string(
    config: dict[str, Any], key: str, errors: ConfigErrors, message: str = REQUIRED
) -> str:
    """Trim ``config[key]`` in place; record ``message`` when it is missing or blank."""
    value = config.get(key)
    if not isinstance(value, str) or not value.strip():
        add_error(errors, f"config.{key}", message)
        return ""
    config[key] = value.strip()
    return config[key]


def require_url(
    config: dict[str, Any],
    key: str,
    errors: ConfigErrors,
    message: str = "This field must be a valid URL.",
) -> str:
    url = require_string(config, key, errors, message)
    if not url:
        return ""
    if not is_valid_url(url):
        add_error(errors, f"config.{key}", message)
        return ""
    config[key] = url.rstrip("/")
    return config[key]


def coerce_string_list(
    config: dict[str, Any],
    key: str,
    errors: ConfigErrors,
    message: str = "Must be an array of strings.",
) -> list[str]:
    """Accept a comma separated string or a list; store the trimmed non-empty items."""
    value = config.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        candidates = [part.strip() for part in value.split(",")]
    elif isinstance(value, list):
        candidates = [
            str(item).strip()
            for item in value
            if isinstance(item, (str, int, float)) and not isinstance(item, bool)
        ]
    else:
        add_error(errors, f"config.{key}", message)
        return []

    items = [item for item in candidates if item]
    config[key] = items
    return items


def coerce_port(
    config: dict[str, Any],
    key: str,
    errors: ConfigErrors,
    message: str = "Port must be between 1 and 65535.",
) -> int:
    value = config.get(key)
    if value is None or value == "":
        add_error(errors, f"config.{key}", REQUIRED)
        return 0
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 65535:
        add_error(errors, f"config.{key}", message)
        return 0
    config[key] = value
    return value


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def normalize_jit_config(raw: Any, errors: ConfigErrors) -> dict[str, Any]:
    """Validate a ``jit`` block, recording problems under ``config.jit.*``."""
    normalized: dict[str, Any] = {"create_users": True, "default_roles": [], "role_templates": []}
    if not isinstance(raw, dict):
        add_error(errors, "config.jit", "Just-in-time provisioning must be an object.")
        return normalized

    if "create_users" in raw:
        coerced = coerce_bool(raw["create_users"])
        if coerced is not None:
            normalized["create_users"] = coerced

    if "default_roles" in raw:
        roles = raw["default_roles"]
        if not isinstance(roles, list):
            add_error(errors, "config.jit.default_roles", "Default roles must be an array of role IDs.")
        else:
            collected = []
            for role in roles:
                if not isinstance(role, str) or not role.strip():
                    add_error(
                        errors,
                        "config.jit.default_roles",
                        "Role identifiers must be non-empty strings.",
                    )
                    continue
                collected.append(role.strip().lower())
            normalized["default_roles"] = _unique(collected)

    if "role_templates" in raw:
        templates = raw["role_templates"]
        if not isinstance(templates, list):
            add_error(errors, "config.jit.role_templates", "Role templates must be an array.")
        else:
            for index, template in enumerate(templates):
                parsed = _normalize_role_template(template, f"config.jit.role_templates.{index}", errors)
                if parsed is not None:
                    normalized["role_templates"].append(parsed)

    return normalized


def _normalize_role_template(
    template: Any, path: str, errors: ConfigErrors
) -> dict[str, Any] | None:
    if not isinstance(template, dict):
        add_error(errors, path, "Each template must be an object.")
        return None

    claim = template.get("claim")
    if not isinstance(claim, str) or not claim.strip():
        add_error(errors, f"{path}.claim", "Claim is required.")
        return None

    source = template.get("values", template.get("value"))
    if isinstance(source, str):
        values = [source.strip()]
    elif isinstance(source, list):
        values = [item.strip() for item in source if isinstance(item, str)]
    else:
        add_error(errors, f"{path}.values", "Values must be a string or array of strings.")
        return None
    values = _unique([value for value in values if value])
    if not values:
        add_error(errors, f"{path}.values", "At least one comparison value is required.")
        return None

    roles_raw = template.get("roles")
    if not isinstance(roles_raw, list) or not roles_raw:
        add_error(errors, f"{path}.roles", "Roles must be a non-empty array of role IDs.")
        return None
    roles = _unique(
        [role.strip().lower() for role in roles_raw if isinstance(role, str) and role.strip()]
    )
    if not roles:
        add_error(errors, f"{path}.roles", "Roles must be non-empty strings.")
        return None

    return {"claim": claim.strip(), "values": values, "roles": roles}


class IdpDriver(ABC):
    """One identity protocol: config normalisation plus a health probe."""

    key: str

    @abstractmethod
    def normalize_config(self, config: dict[str, Any]) -> dict[str, Any]:
        """Return the normalised config or raise ValidationFailed."""

    @abstractmethod
    async def check_health(self, config: dict[str, Any]) -> IdpHealthCheckResult: ...
