from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

import psycopg2
import psycopg2.extras
from psycopg2 import pool as psycopg2_pool

from supplier_portal.contexts.tenancy.domain.registry import TenantRegistry
from supplier_portal.contexts.tenancy.infrastructure.circuit_breaker import TenantCircuitBreakers
from supplier_portal.db import convert_qmark_to_pg, is_postgres_url, normalize_postgres_dsn, sqlite_path_from_url
from supplier_portal.errors import PortalUnavailableError, TenantUnreachableError
from supplier_portal.observability import observe_tenant_connection


PORTAL_CONNECTION_KEY = "portal"

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    sqlite3.OperationalError,
    sqlite3.InterfaceError,
    sqlite3.DatabaseError,
    psycopg2.OperationalError,
    psycopg2.InterfaceError,
    psycopg2_pool.PoolError,
)

T = TypeVar("T")


def is_transport_error(exc: BaseException) -> bool:
    if isinstance(exc, (sqlite3.IntegrityError, sqlite3.ProgrammingError)):
        return False
    return isinstance(exc, _TRANSPORT_ERRORS)


def is_integrity_error(exc: BaseException) -> bool:
    return isinstance(exc, (sqlite3.IntegrityError, psycopg2.IntegrityError))


class TenantConnection:
    """A live handle to one tenant (or the portal) database.

    SQLite handles share one connection guarded by a lock; PostgreSQL handles
    borrow from a ``ThreadedConnectionPool`` per call. Either way the handle
    is safe to use from many request threads at once.
    """

    def __init__(
        self,
        tenant_code: str,
        backend: str,
        *,
        sqlite_conn: sqlite3.Connection | None = None,
        pg_pool: psycopg2_pool.ThreadedConnectionPool | None = None,
    ) -> None:
        self.tenant_code = tenant_code
        self.backend = backend
        self._sqlite_conn = sqlite_conn
        self._pg_pool = pg_pool
        self._lock = threading.Lock()
        self._closed = False
        self.opened_at = time.time()

    @classmethod
    def open(
        cls,
        tenant_code: str,
        url: str,
        *,
        connect_timeout: float = 10,
        min_connections: int = 1,
        max_connections: int = 10,
        create: bool = False,
    ) -> "TenantConnection":
        if is_postgres_url(url):
            pg_pool = psycopg2_pool.ThreadedConnectionPool(
                minconn=max(1, int(min_connections)),
                maxconn=max(int(min_connections), int(max_connections), 1),
                dsn=normalize_postgres_dsn(url),
                connect_timeout=int(connect_timeout),
            )
            handle = cls(tenant_code, "postgres", pg_pool=pg_pool)
        else:
            path = sqlite_path_from_url(url)
            if path == ":memory:":
                conn = sqlite3.connect(path, timeout=float(connect_timeout), check_same_thread=False, isolation_level=None)
            else:
                mode = "rwc" if create else "rw"
                if create:
                    Path(path).parent.mkdir(parents=True, exist_ok=True)
                uri = f"{Path(path).resolve().as_uri()}?mode={mode}"
                conn = sqlite3.connect(
                    uri,
                    uri=True,
                    timeout=float(connect_timeout),
                    check_same_thread=False,
                    isolation_level=None,
                )
            conn.row_factory = sqlite3.Row
            handle = cls(tenant_code, "sqlite", sqlite_conn=conn)
        handle.ping()
        return handle

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise sqlite3.InterfaceError(f"Conexao da empresa {self.tenant_code} fechada.")

    def _run(self, sql: str, params: Iterable | None, fetch: bool) -> tuple[list[dict[str, Any]], int]:
        self._ensure_open()
        values = list(params or ())
        if self.backend == "postgres":
            conn = self._pg_pool.getconn()
            discard = False
            try:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                    if values:
                        cursor.execute(convert_qmark_to_pg(sql), values)
                    else:
                        cursor.execute(sql)
                    rows = [dict(row) for row in cursor.fetchall()] if fetch and cursor.description else []
                    rowcount = cursor.rowcount
                conn.commit()
                return rows, rowcount
            except Exception as exc:
                discard = is_transport_error(exc)
                if not discard:
                    conn.rollback()
                raise
            finally:
                self._pg_pool.putconn(conn, close=discard)

        with self._lock:
            cursor = self._sqlite_conn.execute(sql, values)
            rows = [dict(row) for row in cursor.fetchall()] if fetch else []
            return rows, cursor.rowcount

    def fetch_all(self, sql: str, params: Iterable | None = None) -> list[dict[str, Any]]:
        rows, _count = self._run(sql, params, fetch=True)
        return rows

    def fetch_one(self, sql: str, params: Iterable | None = None) -> dict[str, Any] | None:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Iterable | None = None) -> int:
        _rows, rowcount = self._run(sql, params, fetch=False)
        return rowcount

    def ping(self) -> None:
        self.fetch_one("SELECT 1 AS ok")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pg_pool is not None:
            self._pg_pool.closeall()
        if self._sqlite_conn is not None:
            with self._lock:
                self._sqlite_conn.close()


Connector = Callable[[str, str], TenantConnection]


class ConnectionPoolManager:
    """Owns every tenant connection plus the portal connection.

    Connections open lazily on first ``acquire`` and stay cached until
    ``evict`` or ``close_all``. Creation is single-flight per tenant code.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        *,
        portal_url: str,
        connector: Connector | None = None,
        portal_connector: Connector | None = None,
        retry_attempts: int = 2,
        backoff_ms: int = 300,
        connect_timeout: float = 10,
        min_connections: int = 1,
        max_connections: int = 10,
        breakers: TenantCircuitBreakers | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._registry = registry
        self._portal_url = portal_url
        self._retry_attempts = max(1, int(retry_attempts))
        self._backoff_ms = max(0, int(backoff_ms))
        self._breakers = breakers or TenantCircuitBreakers()
        self._sleep = sleep
        self._logger = logging.getLogger("supplier_portal")

        def _default_connector(code: str, url: str, *, create: bool = False) -> TenantConnection:
            return TenantConnection.open(
                code,
                url,
                connect_timeout=connect_timeout,
                min_connections=min_connections,
                max_connections=max_connections,
                create=create,
            )

        self._connector = connector or _default_connector
        self._portal_connector = portal_connector or (lambda code, url: _default_connector(code, url, create=True))

        self._lock = threading.Lock()
        self._connections: dict[str, TenantConnection] = {}
        self._creation_locks: dict[str, threading.Lock] = {}

    @classmethod
    def from_config(cls, config, registry: TenantRegistry, **overrides) -> "ConnectionPoolManager":
        options = {
            "portal_url": config.get("PORTAL_DB_PATH"),
            "retry_attempts": config.get("TENANT_CONNECT_RETRY_ATTEMPTS", 2),
            "backoff_ms": config.get("TENANT_CONNECT_BACKOFF_MS", 300),
            "connect_timeout": config.get("TENANT_CONNECT_TIMEOUT_SECONDS", 10),
            "min_connections": config.get("TENANT_POOL_MIN_CONNECTIONS", 1),
            "max_connections": config.get("TENANT_POOL_MAX_CONNECTIONS", 10),
            "breakers": TenantCircuitBreakers.from_config(config),
        }
        options.update(overrides)
        return cls(registry, **options)

    @property
    def registry(self) -> TenantRegistry:
        return self._registry

    @property
    def breakers(self) -> TenantCircuitBreakers:
        return self._breakers

    def _creation_lock(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._creation_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._creation_locks[key] = lock
            return lock

    def _cached(self, key: str) -> TenantConnection | None:
        with self._lock:
            conn = self._connections.get(key)
        if conn is not None and not conn.closed:
            return conn
        return None

    def acquire(self, tenant_code: str) -> TenantConnection:
        descriptor = self._registry.describe(tenant_code)
        return self._acquire(descriptor.code, descriptor.database_url, self._connector, guarded=True)

    def acquire_portal(self) -> TenantConnection:
        return self._acquire(PORTAL_CONNECTION_KEY, self._portal_url, self._portal_connector, guarded=False)

    def _acquire(self, key: str, url: str, connector: Connector, *, guarded: bool) -> TenantConnection:
        conn = self._cached(key)
        if conn is not None:
            return conn

        with self._creation_lock(key):
            conn = self._cached(key)
            if conn is not None:
                return conn
            conn = self._open_with_retry(key, url, connector, guarded=guarded)
            with self._lock:
                self._connections[key] = conn
            return conn

    def _open_with_retry(self, key: str, url: str, connector: Connector, *, guarded: bool) -> TenantConnection:
        breaker = self._breakers.for_tenant(key) if guarded else None
        if breaker is not None:
            allowed, state = breaker.before_call()
            if not allowed:
                self._logger.warning("tenant_circuit_open", extra={"tenant_code": key, "circuit_state": state})
                raise TenantUnreachableError(
                    key,
                    details=f"Circuito aberto para empresa {key}",
                    payload={"tenant_code": key, "circuit_state": state},
                )

        last_error: Exception | None = None
        for attempt in range(1, self._retry_attempts + 1):
            started = time.perf_counter()
            try:
                conn = connector(key, url)
            except Exception as exc:
                last_error = exc
                self._logger.warning(
                    "tenant_connection_attempt_failed",
                    extra={
                        "tenant_code": key,
                        "attempt": attempt,
                        "max_attempts": self._retry_attempts,
                        "error": str(exc),
                    },
                )
                if attempt < self._retry_attempts and self._backoff_ms > 0:
                    self._sleep((self._backoff_ms * attempt) / 1000.0)
                continue

            if breaker is not None:
                breaker.record_success()
            observe_tenant_connection(key, "opened")
            self._logger.info(
                "tenant_connection_opened",
                extra={
                    "tenant_code": key,
                    "backend": getattr(conn, "backend", None),
                    "attempt": attempt,
                    "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
                },
            )
            return conn

        if breaker is not None:
            breaker.record_failure()
        observe_tenant_connection(key, "failed")
        self._logger.error(
            "tenant_connection_failed",
            extra={"tenant_code": key, "attempts": self._retry_attempts, "error": str(last_error)},
        )
        if key == PORTAL_CONNECTION_KEY:
            raise PortalUnavailableError(details=str(last_error)) from last_error
        raise TenantUnreachableError(key, details=str(last_error)) from last_error

    def evict(self, tenant_code: str, expected: TenantConnection | None = None) -> bool:
        """Drop the cached connection for ``tenant_code``.

        With ``expected``, only that connection is dropped; a fresher one
        opened by another caller in the meantime stays cached.
        """
        key = str(tenant_code or "").strip()
        with self._lock:
            conn = self._connections.get(key)
            if conn is None or (expected is not None and conn is not expected):
                return False
            del self._connections[key]
        try:
            conn.close()
        except Exception as exc:
            self._logger.warning("tenant_connection_close_failed", extra={"tenant_code": key, "error": str(exc)})
        observe_tenant_connection(key, "evicted")
        self._logger.info("tenant_connection_evicted", extra={"tenant_code": key})
        return True

    def run(self, tenant_code: str, fn: Callable[[TenantConnection], T]) -> T:
        """Call ``fn`` with the tenant connection; evict and retry once on a transport error."""
        breaker = self._breakers.for_tenant(str(tenant_code).strip())
        for attempt in (1, 2):
            conn = self.acquire(tenant_code)
            try:
                result = fn(conn)
            except Exception as exc:
                if not is_transport_error(exc):
                    raise
                breaker.record_failure()
                self.evict(tenant_code, expected=conn)
                if attempt == 2:
                    raise TenantUnreachableError(str(tenant_code), details=str(exc)) from exc
                self._logger.warning(
                    "tenant_connection_retry",
                    extra={"tenant_code": tenant_code, "error": str(exc)},
                )
                continue
            breaker.record_success()
            return result
        raise TenantUnreachableError(str(tenant_code))

    def is_open(self, tenant_code: str) -> bool:
        return self._cached(str(tenant_code or "").strip()) is not None

    def snapshot(self) -> dict:
        with self._lock:
            open_codes = sorted(code for code, conn in self._connections.items() if not conn.closed)
            backends = {code: self._connections[code].backend for code in open_codes}
        return {
            "open_connections": open_codes,
            "backends": backends,
            "circuits": self._breakers.snapshot(),
        }

    def close_all(self) -> None:
        with self._lock:
            connections = list(self._connections.items())
            self._connections.clear()
        for key, conn in connections:
            try:
                conn.close()
            except Exception as exc:
                self._logger.warning("tenant_connection_close_failed", extra={"tenant_code": key, "error": str(exc)})
        if connections:
            self._logger.info("tenant_connections_closed", extra={"count": len(connections)})
