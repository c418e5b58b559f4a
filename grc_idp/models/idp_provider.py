"""IdpProvider model - a configured external Identity Provider.

Providers are evaluated in ``evaluation_order``. The column is unique and the
provider service keeps the values a contiguous 1..N range; every write that
moves a provider shifts its siblings inside the same transaction.

The ``config`` JSON column holds the driver-specific settings produced by the
driver's normalize_config(), e.g.:
    SAML: {"entity_id": ..., "sso_url": ..., "certificate": ...}
    OIDC: {"issuer": ..., "client_id": ..., "client_secret": ..., "scopes": [...]}
    LDAP: {"host": ..., "port": 636, "base_dn": ..., "bind_strategy": "service"}
plus the shared keys email_attribute, name_attribute and jit.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from grc_idp.database import Base, JSONType


class IdpDriverKey(StrEnum):
    LDAP = "ldap"
    OIDC = "oidc"
    ENTRA = "entra"
    SAML = "saml"


class IdpProvider(Base):
    __tablename__ = "idp_providers"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="URL-safe slug, e.g. 'corp-saml'",
    )
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    driver: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Protocol driver: ldap, oidc, entra or saml",
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    evaluation_order: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="1-based priority, contiguous across all providers",
    )

    config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    last_health_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint("evaluation_order", name="uq_idp_providers_evaluation_order"),
    )

    def __repr__(self) -> str:
        return (
            f"<IdpProvider id={self.id} key={self.key!r} driver={self.driver} "
            f"order={self.evaluation_order}>"
        )
