from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, TypeVar

from supplier_portal.contexts.tenancy.domain.contracts import ProviderMapping
from supplier_portal.contexts.tenancy.infrastructure.connection_pool import (
    PORTAL_CONNECTION_KEY,
    ConnectionPoolManager,
    TenantConnection,
    is_integrity_error,
    is_transport_error,
)
from supplier_portal.db import PORTAL_MAPPING_TABLE, init_portal_schema
from supplier_portal.errors import PortalUnavailableError
from supplier_portal.observability import observe_mapping_write


T = TypeVar("T")

_COLUMNS = "id, portal_user_id, tenant_code, internal_supplier_code, active, created_at, updated_at, deactivated_at"

ACTION_INSERTED = "inserted"
ACTION_REACTIVATED = "reactivated"
ACTION_UPDATED = "updated"
ACTION_UNCHANGED = "unchanged"
WRITE_ACTIONS = frozenset({ACTION_INSERTED, ACTION_REACTIVATED, ACTION_UPDATED})


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


class MappingStore:
    """Portal-side record of which ERP supplier a portal user is in each tenant."""

    def __init__(
        self,
        pools: ConnectionPoolManager,
        *,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        self._pools = pools
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock or _utc_now_iso
        self._logger = logging.getLogger("supplier_portal")
        self._locks_guard = threading.Lock()
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}

    def _with_portal(self, fn: Callable[[TenantConnection], T]) -> T:
        conn = self._pools.acquire_portal()
        try:
            return fn(conn)
        except Exception as exc:
            if not is_transport_error(exc):
                raise
            self._pools.evict(PORTAL_CONNECTION_KEY)
            raise PortalUnavailableError(details=str(exc)) from exc

    def _key_lock(self, portal_user_id: str, tenant_code: str) -> threading.Lock:
        key = (portal_user_id, tenant_code)
        with self._locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def init_schema(self) -> None:
        self._with_portal(init_portal_schema)

    def find_active(self, portal_user_id: str, tenant_code: str) -> ProviderMapping | None:
        row = self._with_portal(
            lambda conn: conn.fetch_one(
                f"""
                SELECT {_COLUMNS}
                FROM {PORTAL_MAPPING_TABLE}
                WHERE portal_user_id = ? AND tenant_code = ? AND active = 1
                LIMIT 1
                """,
                (str(portal_user_id), str(tenant_code)),
            )
        )
        return ProviderMapping.from_row(row) if row else None

    def list_active(self, portal_user_id: str) -> list[ProviderMapping]:
        rows = self._with_portal(
            lambda conn: conn.fetch_all(
                f"""
                SELECT {_COLUMNS}
                FROM {PORTAL_MAPPING_TABLE}
                WHERE portal_user_id = ? AND active = 1
                ORDER BY tenant_code
                """,
                (str(portal_user_id),),
            )
        )
        return [ProviderMapping.from_row(row) for row in rows]

    def list_history(self, portal_user_id: str, tenant_code: str) -> list[ProviderMapping]:
        rows = self._with_portal(
            lambda conn: conn.fetch_all(
                f"""
                SELECT {_COLUMNS}
                FROM {PORTAL_MAPPING_TABLE}
                WHERE portal_user_id = ? AND tenant_code = ?
                ORDER BY created_at, id
                """,
                (str(portal_user_id), str(tenant_code)),
            )
        )
        return [ProviderMapping.from_row(row) for row in rows]

    def _get(self, conn: TenantConnection, mapping_id: str) -> ProviderMapping:
        row = conn.fetch_one(
            f"SELECT {_COLUMNS} FROM {PORTAL_MAPPING_TABLE} WHERE id = ?",
            (mapping_id,),
        )
        return ProviderMapping.from_row(row)

    def upsert(self, portal_user_id: str, tenant_code: str, internal_supplier_code: str) -> ProviderMapping:
        mapping, _action = self.upsert_with_action(portal_user_id, tenant_code, internal_supplier_code)
        return mapping

    def upsert_with_action(
        self,
        portal_user_id: str,
        tenant_code: str,
        internal_supplier_code: str,
    ) -> tuple[ProviderMapping, str]:
        user_id = str(portal_user_id).strip()
        code = str(tenant_code).strip()
        supplier_code = str(internal_supplier_code).strip()

        with self._key_lock(user_id, code):
            try:
                mapping, action = self._with_portal(lambda conn: self._upsert_once(conn, user_id, code, supplier_code))
            except Exception as exc:
                if not is_integrity_error(exc):
                    raise
                # Another process won the insert; the active row is now theirs.
                self._logger.warning(
                    "provider_mapping_conflict",
                    extra={"portal_user_id": user_id, "tenant_code": code, "error": str(exc)},
                )
                mapping, action = self._with_portal(lambda conn: self._upsert_once(conn, user_id, code, supplier_code))

        observe_mapping_write(action)
        if action in WRITE_ACTIONS:
            self._logger.info(
                "provider_mapping_written",
                extra={
                    "portal_user_id": user_id,
                    "tenant_code": code,
                    "mapping_id": mapping.id,
                    "internal_supplier_code": supplier_code,
                    "action": action,
                },
            )
        return mapping, action

    def _upsert_once(
        self,
        conn: TenantConnection,
        portal_user_id: str,
        tenant_code: str,
        supplier_code: str,
    ) -> tuple[ProviderMapping, str]:
        now = self._clock()
        active = conn.fetch_one(
            f"""
            SELECT {_COLUMNS}
            FROM {PORTAL_MAPPING_TABLE}
            WHERE portal_user_id = ? AND tenant_code = ? AND active = 1
            LIMIT 1
            """,
            (portal_user_id, tenant_code),
        )
        if active:
            current = ProviderMapping.from_row(active)
            if current.internal_supplier_code == supplier_code:
                return current, ACTION_UNCHANGED
            conn.execute(
                f"UPDATE {PORTAL_MAPPING_TABLE} SET internal_supplier_code = ?, updated_at = ? WHERE id = ?",
                (supplier_code, now, current.id),
            )
            return self._get(conn, current.id), ACTION_UPDATED

        dormant = conn.fetch_one(
            f"""
            SELECT {_COLUMNS}
            FROM {PORTAL_MAPPING_TABLE}
            WHERE portal_user_id = ? AND tenant_code = ? AND active = 0
            ORDER BY updated_at DESC, created_at DESC
            LIMIT 1
            """,
            (portal_user_id, tenant_code),
        )
        if dormant:
            mapping_id = str(dormant["id"])
            conn.execute(
                f"""
                UPDATE {PORTAL_MAPPING_TABLE}
                SET active = 1, internal_supplier_code = ?, updated_at = ?, deactivated_at = NULL
                WHERE id = ?
                """,
                (supplier_code, now, mapping_id),
            )
            return self._get(conn, mapping_id), ACTION_REACTIVATED

        mapping_id = self._id_factory()
        conn.execute(
            f"""
            INSERT INTO {PORTAL_MAPPING_TABLE}
                (id, portal_user_id, tenant_code, internal_supplier_code, active, created_at, updated_at)
            VALUES (?, ?, ?, ?, 1, ?, ?)
            """,
            (mapping_id, portal_user_id, tenant_code, supplier_code, now, now),
        )
        return self._get(conn, mapping_id), ACTION_INSERTED

    def deactivate(self, portal_user_id: str, tenant_code: str) -> bool:
        user_id = str(portal_user_id).strip()
        code = str(tenant_code).strip()
        with self._key_lock(user_id, code):
            now = self._clock()
            changed = self._with_portal(
                lambda conn: conn.execute(
                    f"""
                    UPDATE {PORTAL_MAPPING_TABLE}
                    SET active = 0, deactivated_at = ?, updated_at = ?
                    WHERE portal_user_id = ? AND tenant_code = ? AND active = 1
                    """,
                    (now, now, user_id, code),
                )
            )
        if changed:
            observe_mapping_write("deactivated")
            self._logger.info(
                "provider_mapping_deactivated",
                extra={"portal_user_id": user_id, "tenant_code": code},
            )
        return bool(changed)
