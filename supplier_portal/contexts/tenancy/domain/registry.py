from __future__ import annotations

import json
import os
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from supplier_portal.errors import AppError, UnknownTenantError


class TenantCatalogError(AppError):
    default_code = "catalog_invalid"
    default_message_key = "catalog_invalid"
    default_http_status = 500
    default_critical = True


class Environment(str, Enum):
    PRODUCTION = "production"
    TEST = "test"

    @classmethod
    def parse(cls, value: "Environment | str | None") -> "Environment":
        if isinstance(value, Environment):
            return value
        normalized = str(value or "").strip().lower()
        aliases = {
            "production": cls.PRODUCTION,
            "prod": cls.PRODUCTION,
            "producao": cls.PRODUCTION,
            "produccion": cls.PRODUCTION,
            "test": cls.TEST,
            "testing": cls.TEST,
            "pruebas": cls.TEST,
        }
        if normalized not in aliases:
            raise ValueError(f"Ambiente desconhecido: {value!r}")
        return aliases[normalized]


@dataclass(frozen=True)
class TenantDescriptor:
    code: str
    display_name: str
    environment: Environment
    connection_params: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def database_url(self) -> str:
        return str(self.connection_params.get("database_url") or "")

    @property
    def erp_company(self) -> str:
        return str(self.connection_params.get("erp_company") or self.code)

    @property
    def database_name(self) -> str | None:
        value = str(self.connection_params.get("database_name") or "").strip()
        return value or None

    @property
    def company_slug(self) -> str | None:
        value = str(self.connection_params.get("company_slug") or "").strip()
        return value or None

    def to_dict(self) -> dict[str, Any]:
        # database_url can carry credentials; never part of the public shape.
        return {
            "code": self.code,
            "display_name": self.display_name,
            "environment": self.environment.value,
            "erp_company": self.erp_company,
            "database_name": self.database_name,
            "company_slug": self.company_slug,
        }


_COMPANIES = (
    ("la-cantera", "La Cantera Desarrollos Mineros"),
    ("peralillo", "El Peralillo SA de CV"),
    ("plaza-galerena", "Plaza Galereña"),
    ("inmobiliaria-galerena", "Inmobiliaria Galereña"),
    ("icrear", "Icrear"),
)

_DEFAULT_DATABASE_NAMES = {
    Environment.PRODUCTION: "Cantera",
    Environment.TEST: "Cantera_Ajustes",
}


def default_catalog_entries() -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for offset, environment in ((0, Environment.PRODUCTION), (5, Environment.TEST)):
        for index, (slug, name) in enumerate(_COMPANIES, start=1):
            code = f"{index + offset:02d}"
            entries.append(
                {
                    "code": code,
                    "display_name": name,
                    "environment": environment.value,
                    "erp_company": code,
                    "database_name": _DEFAULT_DATABASE_NAMES[environment],
                    "company_slug": slug,
                }
            )
    return entries


def _fold(value: object) -> str:
    decomposed = unicodedata.normalize("NFKD", str(value or ""))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.casefold().split())


def _descriptor_from_entry(entry: Mapping[str, Any], default_urls: Mapping[Environment, str | None], base_dir: str):
    if not isinstance(entry, Mapping):
        raise TenantCatalogError(details=f"Entrada de catalogo invalida: {entry!r}")
    code = str(entry.get("code") or "").strip()
    display_name = str(entry.get("display_name") or entry.get("name") or "").strip()
    if not code or not display_name:
        raise TenantCatalogError(details=f"Entrada sem codigo ou nome: {dict(entry)!r}")
    try:
        environment = Environment.parse(entry.get("environment"))
    except ValueError as exc:
        raise TenantCatalogError(details=f"Empresa {code}: {exc}") from exc

    params = dict(entry.get("connection_params") or {})
    for key in ("database_url", "erp_company", "database_name", "company_slug"):
        if key in entry and key not in params:
            params[key] = entry[key]
    if not params.get("database_url"):
        params["database_url"] = default_urls.get(environment) or "sqlite:///" + os.path.join(
            base_dir, "database", "erp", f"tenant_{code}.db"
        )
    params.setdefault("erp_company", code)
    return TenantDescriptor(
        code=code,
        display_name=display_name,
        environment=environment,
        connection_params=MappingProxyType(params),
    )


def _validate_ranges(descriptors: Iterable[TenantDescriptor]) -> None:
    by_environment: dict[Environment, list[int]] = {}
    seen: set[str] = set()
    for descriptor in descriptors:
        if descriptor.code in seen:
            raise TenantCatalogError(details=f"Codigo de empresa duplicado: {descriptor.code}")
        seen.add(descriptor.code)
        if not descriptor.code.isdigit():
            raise TenantCatalogError(details=f"Codigo de empresa nao numerico: {descriptor.code}")
        by_environment.setdefault(descriptor.environment, []).append(int(descriptor.code))

    if not seen:
        raise TenantCatalogError(details="Catalogo de empresas vazio.")

    spans: list[tuple[int, int, Environment]] = []
    for environment, numbers in by_environment.items():
        numbers.sort()
        if numbers[-1] - numbers[0] + 1 != len(numbers):
            raise TenantCatalogError(details=f"Codigos de {environment.value} nao formam faixa continua.")
        spans.append((numbers[0], numbers[-1], environment))

    spans.sort()
    for (_low_a, high_a, env_a), (low_b, _high_b, env_b) in zip(spans, spans[1:]):
        if low_b <= high_a:
            raise TenantCatalogError(
                details=f"Faixas de {env_a.value} e {env_b.value} se sobrepoem.",
            )


class TenantRegistry:
    """Immutable catalogue of tenants, shared by every component."""

    def __init__(self, descriptors: Iterable[TenantDescriptor], default_environment: Environment | str = Environment.TEST):
        ordered = tuple(sorted(descriptors, key=lambda item: int(item.code) if item.code.isdigit() else 0))
        _validate_ranges(ordered)
        self._descriptors = ordered
        self._by_code = MappingProxyType({item.code: item for item in ordered})
        self._default_environment = Environment.parse(default_environment)

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[Mapping[str, Any]],
        *,
        default_environment: Environment | str = Environment.TEST,
        default_urls: Mapping[Environment, str | None] | None = None,
        base_dir: str = ".",
    ) -> "TenantRegistry":
        urls = dict(default_urls or {})
        descriptors = [_descriptor_from_entry(entry, urls, base_dir) for entry in entries]
        return cls(descriptors, default_environment=default_environment)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "TenantRegistry":
        base_dir = str(config.get("BASE_DIR") or ".")
        try:
            default_environment = Environment.parse(config.get("TENANT_ENVIRONMENT") or "test")
        except ValueError as exc:
            raise TenantCatalogError(details=str(exc)) from exc
        return cls.from_entries(
            load_catalog(config.get("TENANT_CATALOG")),
            default_environment=default_environment,
            default_urls={
                Environment.PRODUCTION: config.get("TENANT_DATABASE_URL_PROD"),
                Environment.TEST: config.get("TENANT_DATABASE_URL_TEST"),
            },
            base_dir=base_dir,
        )

    @property
    def default_environment(self) -> Environment:
        return self._default_environment

    def describe(self, tenant_code: str) -> TenantDescriptor:
        code = str(tenant_code or "").strip()
        descriptor = self._by_code.get(code)
        if descriptor is None:
            raise UnknownTenantError(code)
        return descriptor

    def list_all(self, environment: Environment | str | None = None) -> list[TenantDescriptor]:
        if environment is None:
            return list(self._descriptors)
        selected = Environment.parse(environment)
        return [item for item in self._descriptors if item.environment == selected]

    def codes(self) -> list[str]:
        return [item.code for item in self._descriptors]

    def resolve_reference(
        self,
        reference: str,
        *,
        database_name: str | None = None,
        environment: Environment | str | None = None,
    ) -> TenantDescriptor:
        """Map an external company reference to a tenant.

        Precedence, first rule with exactly one candidate wins:
        portal code, ERP company + database name, ERP company alone,
        display name or company slug (case and accent insensitive).
        Rules after the first are scoped to ``environment`` (registry
        default when omitted).
        """
        raw = str(reference or "").strip()
        if not raw:
            raise UnknownTenantError(raw)

        direct = self._by_code.get(raw)
        if direct is not None:
            return direct

        scope = self.list_all(environment or self._default_environment)
        wanted_db = _fold(database_name) if database_name else ""

        rules = []
        if wanted_db:
            rules.append(
                [item for item in scope if item.erp_company == raw and _fold(item.database_name) == wanted_db]
            )
        rules.append([item for item in scope if item.erp_company == raw])
        folded = _fold(raw)
        rules.append([item for item in scope if _fold(item.display_name) == folded or _fold(item.company_slug) == folded])

        for candidates in rules:
            if len(candidates) == 1:
                return candidates[0]
            if len(candidates) > 1:
                raise UnknownTenantError(
                    raw,
                    code="tenant_ambiguous",
                    message_key="tenant_ambiguous",
                    details=f"Referencia {raw} corresponde a {len(candidates)} empresas",
                )
        raise UnknownTenantError(raw)

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, tenant_code: object) -> bool:
        return str(tenant_code or "").strip() in self._by_code


def load_catalog(source: str | None) -> list[dict[str, Any]]:
    """Read catalogue entries from inline JSON, a JSON file path, or the built-in default."""
    raw = str(source or "").strip()
    if not raw:
        return default_catalog_entries()

    if raw.startswith(("{", "[")):
        text = raw
    else:
        path = Path(raw).expanduser()
        if not path.exists():
            raise TenantCatalogError(details=f"Arquivo de catalogo nao encontrado: {path}")
        text = path.read_text(encoding="utf-8")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise TenantCatalogError(details=f"Catalogo JSON invalido: {exc}") from exc

    if isinstance(payload, dict):
        payload = payload.get("tenants")
    if not isinstance(payload, list):
        raise TenantCatalogError(details="Catalogo deve ser uma lista de empresas.")
    return payload
