from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def _as_bool(value: object | None) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class SupplierMatch:
    tenant_code: str
    internal_supplier_code: str
    supplier_name: str | None = None
    tax_id: str | None = None
    status_flag: str | None = None

    @staticmethod
    def from_row(tenant_code: str, row: dict[str, Any]) -> "SupplierMatch":
        return SupplierMatch(
            tenant_code=tenant_code,
            internal_supplier_code=str(row.get("supplier_code") or "").strip(),
            supplier_name=_safe_str(row.get("supplier_name")),
            tax_id=_safe_str(row.get("tax_id")),
            status_flag=_safe_str(row.get("status")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_code": self.tenant_code,
            "internal_supplier_code": self.internal_supplier_code,
            "supplier_name": self.supplier_name,
            "tax_id": self.tax_id,
            "status_flag": self.status_flag,
        }


@dataclass(frozen=True)
class ProviderMapping:
    id: str
    portal_user_id: str
    tenant_code: str
    internal_supplier_code: str
    active: bool
    created_at: str | None = None
    updated_at: str | None = None
    deactivated_at: str | None = None

    @staticmethod
    def from_row(row: dict[str, Any]) -> "ProviderMapping":
        return ProviderMapping(
            id=str(row["id"]),
            portal_user_id=str(row["portal_user_id"]),
            tenant_code=str(row["tenant_code"]),
            internal_supplier_code=str(row["internal_supplier_code"]),
            active=_as_bool(row.get("active")),
            created_at=_safe_str(row.get("created_at")),
            updated_at=_safe_str(row.get("updated_at")),
            deactivated_at=_safe_str(row.get("deactivated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "portal_user_id": self.portal_user_id,
            "tenant_code": self.tenant_code,
            "internal_supplier_code": self.internal_supplier_code,
            "active": self.active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "deactivated_at": self.deactivated_at,
        }


@dataclass
class SearchOutcome:
    tax_id: str
    matches: list[SupplierMatch] = field(default_factory=list)
    per_tenant_errors: list[tuple[str, str]] = field(default_factory=list)
    probed_tenants: list[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return bool(self.probed_tenants) and len(self.per_tenant_errors) >= len(self.probed_tenants)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tax_id": self.tax_id,
            "matches": [match.to_dict() for match in self.matches],
            "per_tenant_errors": [{"tenant_code": code, "error": reason} for code, reason in self.per_tenant_errors],
            "probed_tenants": list(self.probed_tenants),
        }


@dataclass
class SyncResult:
    portal_user_id: str
    tax_id: str
    matches_found: int = 0
    mappings_written: int = 0
    per_tenant_errors: list[tuple[str, str]] = field(default_factory=list)
    probed_tenants: int = 0
    mappings: list[ProviderMapping] = field(default_factory=list)
    actions: dict[str, str] = field(default_factory=dict)
    finished_at: str = field(default_factory=_iso_now)

    @property
    def partial_failure(self) -> bool:
        return bool(self.per_tenant_errors)

    @property
    def all_failed(self) -> bool:
        return self.probed_tenants > 0 and len(self.per_tenant_errors) >= self.probed_tenants

    @property
    def status(self) -> str:
        if self.all_failed:
            return "unavailable"
        if self.matches_found == 0:
            return "partial" if self.partial_failure else "not_found"
        return "partial" if self.partial_failure else "linked"

    def to_dict(self) -> dict[str, Any]:
        return {
            "portal_user_id": self.portal_user_id,
            "tax_id": self.tax_id,
            "matches_found": self.matches_found,
            "mappings_written": self.mappings_written,
            "per_tenant_errors": [{"tenant_code": code, "error": reason} for code, reason in self.per_tenant_errors],
            "probed_tenants": self.probed_tenants,
            "partial_failure": self.partial_failure,
            "status": self.status,
            "mappings": [mapping.to_dict() for mapping in self.mappings],
            "actions": dict(self.actions),
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class SessionContext:
    portal_user_id: str
    tenant_code: str
    internal_supplier_code: str
    connection: Any = field(repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "portal_user_id": self.portal_user_id,
            "tenant_code": self.tenant_code,
            "internal_supplier_code": self.internal_supplier_code,
            "backend": getattr(self.connection, "backend", None),
        }
