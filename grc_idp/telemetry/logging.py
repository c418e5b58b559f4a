"""structlog setup for the IdP backend.

Every event carries the request id bound by ``RequestIdMiddleware`` and,
once a route has resolved its provider, ``provider_key`` and ``driver``.
Production renders one JSON object per line:

    {"event": "auth.saml.failed", "level": "warning", "request_id": "req_3f0c...",
     "provider_key": "corp-saml", "driver": "saml", "error": "SAML assertion has expired.",
     "logger": "grc_idp.auth.saml.authenticator", "timestamp": "2026-05-01T09:12:44Z"}

Provider credentials and raw protocol payloads are masked before rendering.
"""

from __future__ import annotations

import logging
import secrets
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

REDACTED = "***"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "bind_password",
        "client_secret",
        "code_verifier",
        "id_token",
        "access_token",
        "samlresponse",
        "private_key",
    }
)

_REQUEST_ID_HEADER = b"x-request-id"


def redact_secrets(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Mask credential-bearing values, including inside nested dicts."""
    return {key: _masked(key, value) for key, value in event_dict.items()}


def _masked(key: str, value: Any) -> Any:
    if key.lower() in SENSITIVE_KEYS and value not in (None, ""):
        return REDACTED
    if isinstance(value, dict):
        return {k: _masked(str(k), v) for k, v in value.items()}
    return value


def configure_logging(*, json_logs: bool = False, log_level: str = "INFO") -> None:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class RequestIdMiddleware:
    """Tag each HTTP request with an id for log correlation.

    A well-formed ``x-request-id`` from the proxy is kept, otherwise one is
    minted. The id is bound to structlog's context and returned in the
    response headers.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _incoming_request_id(scope) or f"req_{secrets.token_hex(8)}"
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = [
                    *message.get("headers", []),
                    (_REQUEST_ID_HEADER, request_id.encode("latin-1")),
                ]
            await send(message)

        await self.app(scope, receive, send_wrapper)


def _incoming_request_id(scope: dict[str, Any]) -> str | None:
    raw = dict(scope.get("headers") or []).get(_REQUEST_ID_HEADER)
    if raw is None:
        return None
    candidate = raw.decode("latin-1").strip()
    if 0 < len(candidate) <= 64 and candidate.isprintable():
        return candidate
    return None


def bind_provider_context(provider_key: str, driver: str) -> None:
    structlog.contextvars.bind_contextvars(provider_key=provider_key, driver=driver)
