"""IdP provider service - business logic for the provider registry.

Handles creation, update, deletion and health checks of external identity
providers, and keeps ``evaluation_order`` a contiguous 1..N range.

Ordering:
- Every method works inside the caller's session; the request dependency
  commits or rolls back, so each shift happens in one transaction
- Rows in the affected range are read with SELECT ... FOR UPDATE
- Up-shifts go highest-first and down-shifts lowest-first, each row flushed
  on its own, so the unique constraint on evaluation_order is never violated
- A row being moved is parked at 0 while its neighbours shift
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_idp.core.audit import AuditLogger
from grc_idp.core.errors import ConfigurationError, ValidationFailed
from grc_idp.core.input_validation import normalize_driver_key, normalize_provider_key
from grc_idp.core.request import RequestContext
from grc_idp.idp.health import IdpHealthCheckResult
from grc_idp.idp.registry import IdpDriverRegistry
from grc_idp.models.audit import AuditCategory
from grc_idp.models.idp_provider import IdpProvider

log = structlog.get_logger(__name__)

_ALLOWED_ATTRIBUTES = ("key", "name", "driver", "enabled", "evaluation_order", "config", "meta")
_SUMMARIZED_FIELDS = ("name", "driver", "enabled", "evaluation_order", "last_health_at")
_PARKED_ORDER = 0


def _invalid(field: str, message: str) -> ValidationFailed:
    return ValidationFailed.single(field, message)


def parse_identifier(identifier: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(identifier)
    except ValueError:
        return None


class IdpProviderService:
    """Service for IdP provider registry operations."""

    def __init__(
        self,
        db: AsyncSession,
        drivers: IdpDriverRegistry,
        audit: AuditLogger | None = None,
    ) -> None:
        self._db = db
        self._drivers = drivers
        self._audit = audit
        self._persistence: bool | None = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def persistence_available(self) -> bool:
        if self._persistence is None:
            self._persistence = await self._db.run_sync(
                lambda session: inspect(session.connection()).has_table(IdpProvider.__tablename__)
            )
        return self._persistence

    async def _require_persistence(self) -> None:
        if not await self.persistence_available():
            raise ConfigurationError("IdP provider persistence is unavailable.")

    async def all(self) -> list[IdpProvider]:
        result = await self._db.execute(
            select(IdpProvider).order_by(IdpProvider.evaluation_order, IdpProvider.name)
        )
        return list(result.scalars().all())

    async def find_by_id_or_key(self, identifier: str) -> IdpProvider | None:
        provider_id = parse_identifier(identifier)
        if provider_id is not None:
            return await self._db.get(IdpProvider, provider_id)

        key = normalize_provider_key(identifier)
        if not key:
            return None
        result = await self._db.execute(select(IdpProvider).where(IdpProvider.key == key))
        return result.scalar_one_or_none()

    async def has_configured_provider(self) -> bool:
        if not await self.persistence_available():
            return False
        result = await self._db.execute(select(IdpProvider.id).limit(1))
        return result.first() is not None

    async def has_enabled_provider(self) -> bool:
        if not await self.persistence_available():
            return False
        result = await self._db.execute(
            select(IdpProvider.id).where(IdpProvider.enabled.is_(True)).limit(1)
        )
        return result.first() is not None

    async def enabled(self) -> list[IdpProvider]:
        result = await self._db.execute(
            select(IdpProvider)
            .where(IdpProvider.enabled.is_(True))
            .order_by(IdpProvider.evaluation_order, IdpProvider.name)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self, attributes: dict[str, Any], context: RequestContext | None = None
    ) -> IdpProvider:
        await self._require_persistence()
        payload = self._sanitize(attributes)
        await self._ensure_unique_key(payload["key"])

        order = await self._normalized_order(payload.pop("evaluation_order", None))
        await self._shift_up(order, None)

        provider = IdpProvider(
            key=payload["key"],
            name=payload.get("name") or payload["key"],
            driver=payload["driver"],
            enabled=payload.get("enabled", True),
            evaluation_order=order,
            config=payload["config"],
            meta=payload.get("meta"),
        )
        self._db.add(provider)
        await self._db.flush()

        log.info(
            "idp.provider.created",
            provider_id=str(provider.id),
            key=provider.key,
            driver=provider.driver,
            order=order,
        )
        await self._log_audit(
            "idp.provider.created",
            provider,
            context,
            {"config_keys": list(provider.config or {})},
        )
        return provider

    async def update(
        self,
        provider: IdpProvider,
        attributes: dict[str, Any],
        context: RequestContext | None = None,
    ) -> IdpProvider:
        await self._require_persistence()
        payload = self._sanitize(attributes, current_driver=provider.driver)
        if "key" in payload and payload["key"] != provider.key:
            await self._ensure_unique_key(payload["key"], ignore_id=provider.id)

        before = {field: getattr(provider, field) for field in _SUMMARIZED_FIELDS}
        before_config, before_meta = provider.config, provider.meta

        original_order = provider.evaluation_order
        requested = payload.pop("evaluation_order", None)
        if requested is not None:
            target = await self._normalized_order(requested, ignore_id=provider.id)
            if target != original_order:
                await self._move(provider, original_order, target)

        for field, value in payload.items():
            setattr(provider, field, value)
        await self._db.flush()

        changes = {
            field: getattr(provider, field)
            for field in _SUMMARIZED_FIELDS
            if getattr(provider, field) != before[field]
        }
        if provider.config != before_config:
            changes["config"] = "updated"
        if provider.meta != before_meta:
            changes["meta"] = "updated"

        meta: dict[str, Any] = {"changes": changes}
        if "config" in payload:
            meta["config_keys"] = list(provider.config or {})

        log.info("idp.provider.updated", provider_id=str(provider.id), changes=list(changes))
        await self._log_audit("idp.provider.updated", provider, context, meta)
        return provider

    async def delete(self, provider: IdpProvider, context: RequestContext | None = None) -> None:
        await self._require_persistence()

        snapshot = IdpProvider(
            id=provider.id,
            key=provider.key,
            driver=provider.driver,
            enabled=provider.enabled,
            evaluation_order=provider.evaluation_order,
        )
        order = provider.evaluation_order

        await self._db.delete(provider)
        await self._db.flush()
        await self._shift_down(order + 1, None, collapse=True)

        log.info("idp.provider.deleted", provider_id=str(snapshot.id), key=snapshot.key)
        await self._log_audit(
            "idp.provider.deleted",
            snapshot,
            context,
            {"was_enabled": snapshot.enabled, "evaluation_order": order},
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(
        self, provider: IdpProvider, context: RequestContext | None = None
    ) -> IdpHealthCheckResult:
        await self._require_persistence()

        driver = self._drivers.get(provider.driver)
        result = await driver.check_health(dict(provider.config or {}))

        locked = await self._db.execute(
            select(IdpProvider).where(IdpProvider.id == provider.id).with_for_update()
        )
        current = locked.scalar_one_or_none()
        if current is None:
            raise _invalid("provider", "Identity provider not found.")

        current.meta = apply_health_meta(current.meta, result)
        if result.is_healthy:
            current.last_health_at = result.checked_at
        await self._db.flush()

        log.info(
            "idp.provider.health_checked",
            provider_id=str(current.id),
            status=str(result.status),
        )
        await self._log_audit(
            "idp.provider.health_checked",
            current,
            context,
            {"status": str(result.status), "message": result.message},
        )
        return result

    async def preview_health(self, attributes: dict[str, Any]) -> IdpHealthCheckResult:
        """Health of an unsaved driver/config pair. Nothing is persisted."""
        driver_key = attributes.get("driver")
        if not isinstance(driver_key, str) or not driver_key.strip():
            raise _invalid("driver", "Provider driver is required.")
        if not self._drivers.has(normalize_driver_key(driver_key)):
            raise _invalid("driver", "Unsupported provider driver.")

        config = attributes.get("config")
        if not isinstance(config, dict):
            raise _invalid("config", "Provider configuration is required.")

        driver = self._drivers.get(normalize_driver_key(driver_key))
        return await driver.check_health(dict(config))

    # ------------------------------------------------------------------
    # Sanitisation
    # ------------------------------------------------------------------

    def _sanitize(
        self, attributes: dict[str, Any], current_driver: str | None = None
    ) -> dict[str, Any]:
        is_update = current_driver is not None
        payload = {key: attributes[key] for key in _ALLOWED_ATTRIBUTES if key in attributes}

        if not is_update:
            for required in ("key", "driver", "config"):
                if required not in payload:
                    raise _invalid(required, f"Provider {required} is required.")

        effective_driver: str | None = None
        if current_driver is not None:
            effective_driver = normalize_driver_key(current_driver)
            if not self._drivers.has(effective_driver):
                raise _invalid("driver", "Unsupported provider driver.")

        if "key" in payload:
            raw_key = payload["key"]
            if not isinstance(raw_key, str) or not raw_key:
                raise _invalid("key", "Provider key must be a non-empty string.")
            payload["key"] = normalize_provider_key(raw_key)
            if not payload["key"]:
                raise _invalid("key", "Provider key must contain alphanumeric characters.")

        if "name" in payload:
            raw_name = payload["name"]
            if not isinstance(raw_name, str) or not raw_name.strip():
                raise _invalid("name", "Provider name must be a non-empty string.")
            payload["name"] = raw_name.strip()

        if "driver" in payload:
            raw_driver = payload["driver"]
            if not isinstance(raw_driver, str) or not raw_driver:
                raise _invalid("driver", "Provider driver must be a non-empty string.")
            driver = normalize_driver_key(raw_driver)
            if not driver or not self._drivers.has(driver):
                raise _invalid("driver", "Unsupported provider driver.")
            if is_update and driver != effective_driver and "config" not in payload:
                raise _invalid(
                    "config", "Configuration must be provided when changing provider driver."
                )
            payload["driver"] = driver
            effective_driver = driver

        if "enabled" in payload:
            payload["enabled"] = bool(payload["enabled"])

        if "evaluation_order" in payload:
            raw_order = payload["evaluation_order"]
            if isinstance(raw_order, str) and raw_order.strip().lstrip("-").isdigit():
                raw_order = int(raw_order.strip())
            if not isinstance(raw_order, int) or isinstance(raw_order, bool):
                raise _invalid("evaluation_order", "Provider evaluation_order must be an integer.")
            payload["evaluation_order"] = max(1, raw_order)

        if "config" in payload:
            raw_config = payload["config"]
            if not isinstance(raw_config, dict):
                raise _invalid("config", "Provider config must be an object.")
            if effective_driver is None:
                raise _invalid("driver", "Driver must be provided when supplying configuration.")
            payload["config"] = self._drivers.get(effective_driver).normalize_config(raw_config)

        meta = payload.get("meta")
        if meta is not None and not isinstance(meta, dict):
            raise _invalid("meta", "Provider meta must be an object or null.")

        return payload

    async def _ensure_unique_key(self, key: str, ignore_id: uuid.UUID | None = None) -> None:
        stmt = select(IdpProvider.id).where(IdpProvider.key == key)
        if ignore_id is not None:
            stmt = stmt.where(IdpProvider.id != ignore_id)
        if (await self._db.execute(stmt.limit(1))).first() is not None:
            raise _invalid("key", "The key has already been taken.")

    # ------------------------------------------------------------------
    # Evaluation order maintenance
    # ------------------------------------------------------------------

    async def _normalized_order(
        self, requested: int | None, ignore_id: uuid.UUID | None = None
    ) -> int:
        stmt = select(func.count()).select_from(IdpProvider)
        if ignore_id is not None:
            stmt = stmt.where(IdpProvider.id != ignore_id)
        count = (await self._db.execute(stmt)).scalar_one()

        if requested is None:
            return count + 1
        return min(max(1, requested), count + 1)

    async def _move(self, provider: IdpProvider, original: int, target: int) -> None:
        provider.evaluation_order = _PARKED_ORDER
        await self._db.flush()

        if target < original:
            await self._shift_up(target, original - 1, exclude_id=provider.id)
        else:
            await self._shift_down(original + 1, target, exclude_id=provider.id)

        provider.evaluation_order = target
        await self._db.flush()

    async def _locked_range(
        self,
        start: int,
        end: int | None,
        *,
        exclude_id: uuid.UUID | None,
        descending: bool,
    ) -> list[IdpProvider]:
        stmt = select(IdpProvider).where(IdpProvider.evaluation_order >= start)
        if end is not None:
            stmt = stmt.where(IdpProvider.evaluation_order <= end)
        if exclude_id is not None:
            stmt = stmt.where(IdpProvider.id != exclude_id)
        order = IdpProvider.evaluation_order.desc() if descending else IdpProvider.evaluation_order
        result = await self._db.execute(stmt.order_by(order).with_for_update())
        return list(result.scalars().all())

    async def _shift_up(
        self, start: int, end: int | None, exclude_id: uuid.UUID | None = None
    ) -> None:
        if end is not None and end < start:
            return
        for row in await self._locked_range(start, end, exclude_id=exclude_id, descending=True):
            row.evaluation_order += 1
            await self._db.flush()

    async def _shift_down(
        self,
        start: int,
        end: int | None,
        exclude_id: uuid.UUID | None = None,
        *,
        collapse: bool = False,
    ) -> None:
        if end is not None and end < start:
            return
        for row in await self._locked_range(start, end, exclude_id=exclude_id, descending=False):
            row.evaluation_order -= 1
            if collapse and row.evaluation_order < 1:
                row.evaluation_order = 1
            await self._db.flush()

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _log_audit(
        self,
        action: str,
        provider: IdpProvider,
        context: RequestContext | None,
        meta: dict[str, Any],
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log(
            action=action,
            category=AuditCategory.AUTH,
            entity_type="idp.provider",
            entity_id=str(provider.id),
            context=context,
            meta={
                "provider_key": provider.key,
                "driver": provider.driver,
                "enabled": provider.enabled,
                **meta,
            },
        )


def apply_health_meta(meta: dict[str, Any] | None, result: IdpHealthCheckResult) -> dict[str, Any]:
    """Return a copy of ``meta`` with ``health`` replaced by ``result``.

    ``last_success_at`` survives a failed check so the admin UI can show when
    the provider last worked.
    """
    updated = dict(meta or {})
    checked_at = result.checked_at.astimezone(UTC).isoformat()
    entry: dict[str, Any] = {
        "status": str(result.status),
        "message": result.message,
        "checked_at": checked_at,
    }
    if result.details:
        entry["details"] = result.details

    previous = updated.get("health")
    if result.is_healthy:
        entry["last_success_at"] = checked_at
    elif isinstance(previous, dict) and isinstance(previous.get("last_success_at"), str):
        entry["last_success_at"] = previous["last_success_at"]

    updated["health"] = entry
    return updated


def provider_payload(provider: IdpProvider) -> dict[str, Any]:
    """Serialise a provider for the admin API."""

    def _iso(value: datetime | None) -> str | None:
        return value.isoformat() if value is not None else None

    return {
        "id": str(provider.id),
        "key": provider.key,
        "name": provider.name,
        "driver": provider.driver,
        "enabled": provider.enabled,
        "evaluation_order": provider.evaluation_order,
        "config": provider.config or {},
        "meta": provider.meta,
        "last_health_at": _iso(provider.last_health_at),
        "created_at": _iso(provider.created_at),
        "updated_at": _iso(provider.updated_at),
    }
