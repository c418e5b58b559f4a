"""Audit logging service.

Records authentication outcomes and IdP administration actions as
AuditEvent rows.

Design:
- Each entry is written in its OWN session and committed immediately.
  Failed logins and lockouts end with an error response that rolls back
  the request transaction, and those are exactly the events that must
  survive.
- Audit failures are logged and swallowed. They never change the outcome
  of the operation being audited.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grc_idp.core.request import RequestContext
from grc_idp.models.audit import AuditCategory, AuditEvent

log = structlog.get_logger(__name__)


def normalize_meta(meta: dict[str, Any] | None) -> dict[str, Any]:
    """Drop None values and render datetimes as ISO-8601 so meta is JSON-safe."""
    normalized: dict[str, Any] = {}
    for key, value in (meta or {}).items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, dict):
            value = normalize_meta(value)
        normalized[key] = value
    return normalized


class AuditLogger:
    """Write-only audit sink.

    Usage:
        audit = AuditLogger(get_session_factory())
        await audit.log(
            action="auth.saml.login",
            category=AuditCategory.AUTH,
            entity_type="user",
            entity_id=str(user.id),
            context=ctx,
            meta={"provider_key": provider.key},
        )
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def log(
        self,
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        category: AuditCategory = AuditCategory.AUTH,
        actor_id: str | None = None,
        context: RequestContext | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or RequestContext()
        event = AuditEvent(
            occurred_at=datetime.now(UTC),
            actor_id=actor_id if actor_id is not None else ctx.actor_id,
            action=action,
            category=str(category),
            entity_type=entity_type,
            entity_id=str(entity_id),
            ip=ctx.ip,
            ua=ctx.ua,
            meta=normalize_meta(meta),
        )
        try:
            async with self._session_factory() as session:
                session.add(event)
                await session.commit()
        except Exception as exc:
            # Audit failure must not change the outcome of the request
            log.error("audit.write_failed", action=action, error=str(exc))
