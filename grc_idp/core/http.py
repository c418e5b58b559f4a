"""Outbound HTTP client helpers."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

# 5 s to connect, 10 s for the whole exchange. No retries.
HTTP_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


@asynccontextmanager
async def http_client(
    client: httpx.AsyncClient | None = None,
    *,
    follow_redirects: bool = False,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield ``client`` when one was injected, else a short-lived client."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, follow_redirects=follow_redirects) as owned:
        yield owned


def is_upstream_outage(exc: httpx.HTTPError) -> bool:
    """Transport failures and 5xx answers, as opposed to a misconfigured URL."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)
