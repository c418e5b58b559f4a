"""Just-in-time user and role provisioning shared by every authenticator.

A provider's ``config["jit"]`` block controls provisioning:

    {
        "create_users": true,
        "default_roles": ["auditor"],
        "role_templates": [
            {"claim": "groups", "values": ["GRC-Admins"], "roles": ["admin"]}
        ]
    }

Role resolution is a pure function of that block and a claim lookup, so the
SAML, OIDC and LDAP flows only differ in how they look claims up.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_idp.core.errors import ValidationFailed
from grc_idp.models.user import Role, User

log = structlog.get_logger(__name__)

ClaimLookup = Callable[[str], Any]

_TRUE_STRINGS = {"1", "true", "on", "yes"}
_FALSE_STRINGS = {"0", "false", "off", "no", ""}


@dataclass(frozen=True)
class RoleTemplate:
    claim: str
    values: tuple[str, ...]
    roles: tuple[str, ...]


@dataclass(frozen=True)
class JitSettings:
    create_users: bool = True
    default_roles: tuple[str, ...] = ()
    role_templates: tuple[RoleTemplate, ...] = field(default_factory=tuple)


def coerce_bool(value: Any) -> bool | None:
    """Interpret bool-ish config values; None when the value is not recognisable."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)


def _role_ids(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return _dedupe(
        role.strip().lower() for role in raw if isinstance(role, str) and role.strip()
    )


def _template_values(template: dict[str, Any]) -> list[str]:
    raw = template.get("values", template.get("value"))
    if isinstance(raw, str):
        candidates = [raw]
    elif isinstance(raw, list):
        candidates = [item for item in raw if isinstance(item, str)]
    else:
        return []
    return _dedupe(value.strip() for value in candidates if value.strip())


def resolve_jit_settings(config: dict[str, Any] | None) -> JitSettings:
    """Build JitSettings from a provider config, skipping malformed templates."""
    jit = (config or {}).get("jit")
    if not isinstance(jit, dict):
        return JitSettings()

    create_users = True
    if "create_users" in jit:
        coerced = coerce_bool(jit["create_users"])
        if coerced is not None:
            create_users = coerced

    templates: list[RoleTemplate] = []
    raw_templates = jit.get("role_templates")
    if isinstance(raw_templates, list):
        for template in raw_templates:
            if not isinstance(template, dict):
                continue
            claim = template.get("claim")
            if not isinstance(claim, str) or not claim.strip():
                continue
            values = _template_values(template)
            roles = _role_ids(template.get("roles"))
            if not values or not roles:
                continue
            templates.append(RoleTemplate(claim.strip(), tuple(values), tuple(roles)))

    return JitSettings(
        create_users=create_users,
        default_roles=tuple(_role_ids(jit.get("default_roles"))),
        role_templates=tuple(templates),
    )


def values_match(actual: Any, expected: Iterable[str]) -> bool:
    """True when a claim value (string or list) shares a value with ``expected``.

    Comparison is case-insensitive and ignores surrounding whitespace.
    """
    wanted = {value.strip().lower() for value in expected if value.strip()}
    if not wanted:
        return False

    if isinstance(actual, str):
        candidates = [actual]
    elif isinstance(actual, (list, tuple)):
        candidates = [item for item in actual if isinstance(item, str)]
    else:
        return False

    return any(candidate.strip().lower() in wanted for candidate in candidates)


def resolve_roles(jit: JitSettings, lookup: ClaimLookup) -> list[str]:
    """Default roles plus the roles of every template whose claim matches."""
    roles = list(jit.default_roles)
    for template in jit.role_templates:
        value = lookup(template.claim)
        if value is None:
            continue
        if values_match(value, template.values):
            roles.extend(template.roles)
    return _dedupe(roles)


def unusable_password_hash() -> str:
    """Password hash no password can match; federated users never log in locally."""
    return "!" + secrets.token_hex(32)


class JitProvisioner:
    """Finds, creates and role-syncs local users for federated logins."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def find_user_by_email(self, email: str) -> User | None:
        result = await self._db.execute(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def create_user(self, email: str, name: str) -> User:
        user = User(
            name=name,
            email=email.strip().lower(),
            password_hash=unusable_password_hash(),
            roles=[],
        )
        self._db.add(user)
        await self._db.flush()
        log.info("auth.jit.user_created", user_id=str(user.id), email=user.email)
        return user

    async def sync_roles(self, user: User, role_ids: list[str]) -> list[str]:
        """Attach the roles that exist; never detach. Returns the ids attached."""
        if not role_ids:
            return []

        result = await self._db.execute(select(Role).where(Role.id.in_(role_ids)))
        existing = {role.id: role for role in result.scalars()}

        unknown = [role_id for role_id in role_ids if role_id not in existing]
        if unknown:
            log.debug("auth.jit.unknown_roles_skipped", user_id=str(user.id), roles=unknown)

        current = {role.id for role in user.roles}
        attached: list[str] = []
        for role_id in role_ids:
            role = existing.get(role_id)
            if role is None or role_id in current:
                continue
            user.roles.append(role)
            current.add(role_id)
            attached.append(role_id)

        if attached:
            await self._db.flush()
        return attached

    async def provision(
        self,
        jit: JitSettings,
        *,
        email: str,
        name: str,
        lookup: ClaimLookup,
    ) -> tuple[User, bool]:
        """Return ``(user, created)`` for a verified federated identity.

        Raises ValidationFailed (422) when the user is unknown and the provider
        does not allow creating accounts. Name refresh of existing users is
        left to the caller since each protocol has its own rule for it.
        """
        user = await self.find_user_by_email(email)
        created = False
        if user is None:
            if not jit.create_users:
                raise ValidationFailed.single(
                    "email", "User does not exist and automatic provisioning is disabled."
                )
            user = await self.create_user(email, name)
            created = True

        await self.sync_roles(user, resolve_roles(jit, lookup))
        return user, created
