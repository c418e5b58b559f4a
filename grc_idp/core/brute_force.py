"""Login brute-force guard.

Fixed window counter per subject, stored in the shared cache under
``auth_bf:{strategy}:{subject}`` as ``{"first": <epoch>, "count": <n>}``.
Every guarded login attempt increments the counter; once it reaches
``max_attempts`` inside the window the attempt is refused with
``lock_http_status`` until the window expires.

Subjects:
- ``ip`` strategy: the client address.
- ``session`` strategy: the value carried by a signed attempt cookie, or the
  client address when no valid cookie is present. In that case the
  response sets the cookie so later attempts keep the same subject.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import structlog
from fastapi import Depends, Request, Response

from grc_idp.cache.backend import CacheBackend, get_cache_backend
from grc_idp.config import BruteForceStrategy, Settings, get_settings
from grc_idp.core.audit import AuditLogger
from grc_idp.core.request import RequestContext

log = structlog.get_logger(__name__)

_FALLBACK_SUBJECT = "0.0.0.0"


class LoginLocked(Exception):
    """Too many login attempts inside the window."""

    def __init__(
        self,
        *,
        strategy: str,
        retry_after: int,
        status_code: int,
        limit: int,
        reset_at: int,
        cookie: tuple[str, str, int] | None = None,
    ) -> None:
        self.strategy = strategy
        self.retry_after = retry_after
        self.status_code = status_code
        self.limit = limit
        self.reset_at = reset_at
        self.cookie = cookie
        super().__init__(f"Login locked for {retry_after}s")

    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
        }


@dataclass(frozen=True)
class AttemptRecord:
    subject: str
    attempts: int
    first: int
    set_cookie: str | None = None


class BruteForceGuard:
    def __init__(
        self,
        settings: Settings,
        cache: CacheBackend,
        audit: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._enabled = settings.auth_bruteforce_enabled
        self._strategy = settings.auth_bruteforce_strategy
        self._window = max(1, settings.auth_bruteforce_window_seconds)
        self._max_attempts = max(1, settings.auth_bruteforce_max_attempts)
        self._lock_status = settings.auth_bruteforce_lock_http_status
        self._cookie_name = settings.auth_bruteforce_cookie_name
        self._secure_cookie = settings.is_prod
        self._secret = settings.secret_key.get_secret_value().encode("utf-8")
        self._cache = cache
        self._audit = audit
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    @property
    def window_seconds(self) -> int:
        return self._window

    # ------------------------------------------------------------------
    # Signed cookie
    # ------------------------------------------------------------------

    def _signature(self, value: str) -> str:
        return hmac.new(self._secret, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_cookie(self, value: str) -> str:
        return f"{value}.{self._signature(value)}"

    def unsign_cookie(self, raw: str | None) -> str | None:
        if not raw or "." not in raw:
            return None
        value, _, signature = raw.rpartition(".")
        if not value or not hmac.compare_digest(signature, self._signature(value)):
            return None
        return value

    # ------------------------------------------------------------------
    # Counting
    # ------------------------------------------------------------------

    def _subject(self, context: RequestContext, cookies: Mapping[str, str]) -> tuple[str, str | None]:
        ip = context.ip or _FALLBACK_SUBJECT
        if self._strategy == BruteForceStrategy.IP:
            return ip, None
        existing = self.unsign_cookie(cookies.get(self._cookie_name))
        if existing is not None:
            return existing, None
        return ip, self.sign_cookie(ip)

    async def register_attempt(
        self, context: RequestContext, cookies: Mapping[str, str]
    ) -> AttemptRecord | None:
        """Count one attempt. Raises LoginLocked once the limit is reached."""
        if not self._enabled:
            return None

        subject, set_cookie = self._subject(context, cookies)
        key = f"auth_bf:{self._strategy}:{subject}"
        now = int(self._clock())

        cached = await self._cache.get(key)
        first, count = now, 0
        if (
            isinstance(cached, dict)
            and isinstance(cached.get("first"), int)
            and isinstance(cached.get("count"), int)
            and now - cached["first"] <= self._window
        ):
            first, count = cached["first"], cached["count"]

        count += 1
        await self._cache.set(key, {"first": first, "count": count}, self._window)

        if count >= self._max_attempts:
            retry_after = max(1, self._window - (now - first))
            log.warning(
                "auth.login.locked",
                strategy=str(self._strategy),
                attempts=count,
                retry_after=retry_after,
            )
            await self._audit_attempt(
                "auth.login.locked",
                context,
                {"strategy": str(self._strategy), "attempts": count, "window_seconds": self._window},
            )
            raise LoginLocked(
                strategy=str(self._strategy),
                retry_after=retry_after,
                status_code=self._lock_status,
                limit=self._max_attempts,
                reset_at=first + self._window,
                cookie=(self._cookie_name, set_cookie, self._window) if set_cookie else None,
            )

        await self._audit_attempt(
            "auth.login.failed",
            context,
            {"strategy": str(self._strategy), "attempts": count, "window_seconds": self._window},
        )
        return AttemptRecord(subject=subject, attempts=count, first=first, set_cookie=set_cookie)

    async def _audit_attempt(self, action: str, context: RequestContext, meta: dict) -> None:
        if self._audit is None:
            return
        await self._audit.log(
            action=action,
            entity_type="auth",
            entity_id="login",
            context=context,
            meta=meta,
        )

    def apply_cookie(self, response: Response, value: str) -> None:
        response.set_cookie(
            self._cookie_name,
            value,
            max_age=self._window,
            path="/",
            secure=self._secure_cookie,
            httponly=True,
            samesite="lax",
        )


# Module-level singleton, initialized in the app lifespan
_guard: BruteForceGuard | None = None


def init_brute_force_guard(
    settings: Settings, cache: CacheBackend, audit: AuditLogger | None = None
) -> BruteForceGuard:
    global _guard
    _guard = BruteForceGuard(settings, cache, audit)
    log.info(
        "brute_force.initialized",
        enabled=settings.auth_bruteforce_enabled,
        strategy=str(settings.auth_bruteforce_strategy),
    )
    return _guard


def get_brute_force_guard() -> BruteForceGuard:
    """FastAPI dependency - return the initialized guard."""
    if _guard is None:
        settings = get_settings()
        return init_brute_force_guard(settings, get_cache_backend(settings))
    return _guard


async def guard_login_attempt(
    request: Request,
    response: Response,
    guard: BruteForceGuard = Depends(get_brute_force_guard),
) -> AttemptRecord | None:
    """Route dependency for login endpoints."""
    record = await guard.register_attempt(RequestContext.from_request(request), request.cookies)
    if record is not None and record.set_cookie is not None:
        guard.apply_cookie(response, record.set_cookie)
    return record
