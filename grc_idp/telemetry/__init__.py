"""Structured logging and request correlation."""

from grc_idp.telemetry.logging import (
    RequestIdMiddleware,
    bind_provider_context,
    configure_logging,
)

__all__ = ["RequestIdMiddleware", "bind_provider_context", "configure_logging"]
