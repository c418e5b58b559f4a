"""Normalises raw directory entries into ``LdapEntry``."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from grc_idp.core.errors import LdapError

_SKIPPED_KEYS = frozenset({"dn", "count"})


@dataclass(frozen=True)
class LdapEntry:
    dn: str
    attributes: dict[str, list[str]] = field(default_factory=dict)

    def values(self, attribute: str) -> list[str] | None:
        return self.attributes.get(attribute.strip().lower())

    def first(self, attribute: str) -> str | None:
        values = self.values(attribute)
        return values[0] if values else None


class LdapEntryNormalizer:
    """Lowercases attribute names and keeps trimmed, non-empty string values."""

    def normalize(self, entry: dict[str, Any]) -> LdapEntry:
        dn = entry.get("dn")
        if not isinstance(dn, str) or not dn.strip():
            raise LdapError("LDAP entry is missing a distinguished name.")

        attributes: dict[str, list[str]] = {}
        for key, raw in entry.items():
            if not isinstance(key, str) or key.lower() in _SKIPPED_KEYS:
                continue
            values = self._values(raw)
            if values:
                attributes[key.lower()] = values

        return LdapEntry(dn=dn.strip(), attributes=attributes)

    @staticmethod
    def _values(raw: Any) -> list[str]:
        if isinstance(raw, str):
            return [raw.strip()] if raw.strip() else []
        if not isinstance(raw, (list, tuple)):
            return []
        return [item.strip() for item in raw if isinstance(item, str) and item.strip()]
