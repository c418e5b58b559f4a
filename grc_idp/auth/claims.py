"""Claim bags and name helpers shared by the federated authenticators."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any


class ClaimSet:
    """Multi-valued, case-forgiving claim store.

    Every value is stored under its key as given and under the lowercase
    alias of that key. A key holds a string until a second distinct value
    (compared case-insensitively) arrives, then a list.
    """

    def __init__(self) -> None:
        self._claims: dict[str, str | list[str]] = {}

    def store(self, key: str, value: str) -> None:
        normalized = key.strip()
        if not normalized:
            return
        self._append(normalized, value)
        lower = normalized.lower()
        if lower != normalized:
            self._append(lower, value)

    def _append(self, key: str, value: str) -> None:
        current = self._claims.get(key)
        if current is None:
            self._claims[key] = value
        elif isinstance(current, str):
            if current.lower() != value.lower():
                self._claims[key] = [current, value]
        elif not any(item.lower() == value.lower() for item in current):
            current.append(value)

    def get(self, key: str) -> str | list[str] | None:
        trimmed = key.strip()
        if not trimmed:
            return None
        if trimmed in self._claims:
            return self._claims[trimmed]
        return self._claims.get(trimmed.lower())

    def keys(self) -> list[str]:
        return list(self._claims)

    def as_dict(self) -> dict[str, Any]:
        return {
            key: list(value) if isinstance(value, list) else value
            for key, value in self._claims.items()
        }


def first_string(value: Any) -> str | None:
    """The value itself when it is a non-blank string, else the first such list item."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, str) and item.strip():
                return item.strip()
    return None


def first_non_empty(lookup: Callable[[str], Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = first_string(lookup(key))
        if value is not None:
            return value
    return None


def normalize_principal(principal: str) -> str:
    """``DOMAIN\\user`` becomes ``user``; anything else is returned trimmed."""
    trimmed = principal.strip()
    if "\\" not in trimmed:
        return trimmed
    last = trimmed.rsplit("\\", 1)[-1]
    return last or trimmed


def compose_name(given: str | None, family: str | None) -> str | None:
    if given and family:
        return f"{given} {family}"
    return given or family
