"""LDAP directory access.

LdapAuthenticator depends on the LdapClient protocol only. Ldap3Client is
the production implementation; ldap3 is synchronous, so every operation
runs in the default executor with its own connection.

Two bind strategies are supported:

    service  bind as bind_dn, search user_filter for the user, rebind as
             the user's DN with the supplied password
    direct   bind straight away as user_dn_template with the username
             substituted, then read the user's own entry
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog
from ldap3 import ALL_ATTRIBUTES, BASE, NONE, SIMPLE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from grc_idp.auth.ldap.normalizer import LdapEntry, LdapEntryNormalizer
from grc_idp.core.errors import LdapError

log = structlog.get_logger(__name__)

USERNAME_PLACEHOLDER = "{{username}}"
INVALID_CREDENTIALS = "Invalid LDAP credentials."


class LdapClient(Protocol):
    async def check_connection(self, config: dict[str, Any]) -> None: ...

    async def authenticate(
        self, config: dict[str, Any], username: str, password: str
    ) -> LdapEntry: ...


def build_filter(config: dict[str, Any], username: str) -> str:
    template = config.get("user_filter")
    if not isinstance(template, str) or not template.strip():
        raise LdapError("User filter configuration missing.")
    return template.strip().replace(USERNAME_PLACEHOLDER, escape_filter_chars(username))


def build_user_dn(config: dict[str, Any], username: str) -> str:
    template = config.get("user_dn_template")
    if not isinstance(template, str) or not template.strip():
        raise LdapError("User DN template configuration missing.")
    return template.strip().replace(USERNAME_PLACEHOLDER, escape_rdn(username))


class Ldap3Client:
    def __init__(self, normalizer: LdapEntryNormalizer | None = None) -> None:
        self._normalizer = normalizer or LdapEntryNormalizer()

    async def check_connection(self, config: dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._check_connection_sync, config)

    async def authenticate(
        self, config: dict[str, Any], username: str, password: str
    ) -> LdapEntry:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._authenticate_sync, config, username, password
        )

    # ------------------------------------------------------------------
    # Blocking implementation
    # ------------------------------------------------------------------

    def _check_connection_sync(self, config: dict[str, Any]) -> None:
        conn = self._connect(config)
        try:
            if self._strategy(config) == "service":
                self._bind_service(conn, config)
        finally:
            self._close(conn)

    def _authenticate_sync(
        self, config: dict[str, Any], username: str, password: str
    ) -> LdapEntry:
        conn = self._connect(config)
        try:
            if self._strategy(config) == "service":
                self._bind_service(conn, config)
                entry = self._search_user(conn, config, username)
                self._bind_user(conn, entry.dn, password)
                return entry

            user_dn = build_user_dn(config, username)
            self._bind_user(conn, user_dn, password)
            entry = self._read_entry(conn, user_dn)
            return LdapEntry(dn=user_dn, attributes=entry.attributes)
        finally:
            self._close(conn)

    @staticmethod
    def _strategy(config: dict[str, Any]) -> str:
        strategy = config.get("bind_strategy")
        return strategy if isinstance(strategy, str) and strategy else "service"

    @staticmethod
    def _connect(config: dict[str, Any]) -> Connection:
        host = config.get("host")
        if not isinstance(host, str) or not host:
            raise LdapError("LDAP host must be a non-empty string.")

        use_ssl = bool(config.get("use_ssl", False))
        port = config.get("port")
        if not isinstance(port, int) or isinstance(port, bool):
            port = 636 if use_ssl else 389
        timeout = config.get("timeout")
        timeout = timeout if isinstance(timeout, int) and not isinstance(timeout, bool) else 10

        server = Server(host, port=port, use_ssl=use_ssl, get_info=NONE, connect_timeout=timeout)
        conn = Connection(
            server,
            authentication=SIMPLE,
            receive_timeout=timeout,
            auto_referrals=False,
            raise_exceptions=False,
        )
        try:
            conn.open()
            if config.get("start_tls") and not conn.start_tls():
                raise LdapError("Failed to negotiate StartTLS.")
        except LDAPException as exc:
            raise LdapError(f"Unable to connect to LDAP host: {exc}") from exc
        return conn

    @staticmethod
    def _attempt_bind(conn: Connection, dn: str, password: str) -> bool:
        conn.user = dn or None
        conn.password = password if dn else None
        try:
            return bool(conn.bind())
        except LDAPException as exc:
            raise LdapError(f"LDAP bind failed: {exc}") from exc

    def _bind_service(self, conn: Connection, config: dict[str, Any]) -> None:
        bind_dn = config.get("bind_dn")
        bind_password = config.get("bind_password")
        if not isinstance(bind_dn, str) or not isinstance(bind_password, str):
            raise LdapError("Service bind credentials must be strings.")
        if self._attempt_bind(conn, bind_dn, bind_password):
            return

        result = conn.result or {}
        detail = " ".join(
            part
            for part in (str(result.get("description") or ""), str(result.get("message") or ""))
            if part
        )
        code = result.get("result")
        message = f"Service bind failed (code {code})" if code else "Service bind failed"
        raise LdapError(f"{message} {detail}".strip())

    def _bind_user(self, conn: Connection, dn: str, password: str) -> None:
        if self._attempt_bind(conn, dn, password):
            return
        log.debug("auth.ldap.user_bind_rejected", result_code=(conn.result or {}).get("result"))
        raise LdapError(INVALID_CREDENTIALS)

    def _search_user(self, conn: Connection, config: dict[str, Any], username: str) -> LdapEntry:
        base_dn = config.get("base_dn")
        if not isinstance(base_dn, str) or not base_dn:
            raise LdapError("Base DN is required for LDAP searches.")
        search_filter = build_filter(config, username)
        try:
            conn.search(
                base_dn,
                search_filter,
                search_scope=SUBTREE,
                attributes=ALL_ATTRIBUTES,
                size_limit=1,
            )
        except LDAPException as exc:
            raise LdapError(f"LDAP search failed: {exc}") from exc
        return self._first_entry(conn)

    def _read_entry(self, conn: Connection, dn: str) -> LdapEntry:
        try:
            conn.search(dn, "(objectClass=*)", search_scope=BASE, attributes=ALL_ATTRIBUTES)
        except LDAPException as exc:
            raise LdapError(f"Failed to read LDAP entry: {exc}") from exc
        return self._first_entry(conn)

    def _first_entry(self, conn: Connection) -> LdapEntry:
        for item in conn.response or []:
            if item.get("type") != "searchResEntry":
                continue
            raw = {"dn": item.get("dn"), **dict(item.get("attributes") or {})}
            return self._normalizer.normalize(raw)
        raise LdapError("LDAP user not found.")

    @staticmethod
    def _close(conn: Connection) -> None:
        try:
            conn.unbind()
        except LDAPException as exc:
            log.debug("auth.ldap.unbind_failed", error=str(exc))
