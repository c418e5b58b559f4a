"""Request metadata passed from the HTTP layer into authenticators."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request


@dataclass(frozen=True)
class RequestContext:
    """Client address and user agent of the current request, plus the acting admin."""

    ip: str | None = None
    ua: str | None = None
    actor_id: str | None = None

    @classmethod
    def from_request(cls, request: Request, actor_id: str | None = None) -> RequestContext:
        ip = request.client.host if request.client else None
        ua = request.headers.get("user-agent")
        return cls(ip=ip, ua=ua[:512] if ua else None, actor_id=actor_id)
