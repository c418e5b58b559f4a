"""Outcome of an IdP health check."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class HealthStatus(StrEnum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class IdpHealthCheckResult:
    status: HealthStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def healthy(
        cls, message: str = "Health check passed.", details: dict[str, Any] | None = None
    ) -> IdpHealthCheckResult:
        return cls(HealthStatus.OK, message, dict(details or {}))

    @classmethod
    def warning(cls, message: str, details: dict[str, Any] | None = None) -> IdpHealthCheckResult:
        return cls(HealthStatus.WARNING, message, dict(details or {}))

    @classmethod
    def failed(cls, message: str, details: dict[str, Any] | None = None) -> IdpHealthCheckResult:
        return cls(HealthStatus.ERROR, message, dict(details or {}))

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.OK

    def with_details(self, extra: dict[str, Any]) -> IdpHealthCheckResult:
        """Same status and message, details extended with ``extra``."""
        return IdpHealthCheckResult(self.status, self.message, {**self.details, **extra})

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "message": self.message,
            "checked_at": self.checked_at.isoformat(),
            "details": self.details,
        }
