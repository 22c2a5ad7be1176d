from __future__ import annotations

import json
import os
import shutil
import sqlite3
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path


_REPO_ROOT = Path(__file__).resolve().parents[2]
_TEMP_ROOT = Path(tempfile.gettempdir()).resolve()

PROV_DDL = """
CREATE TABLE IF NOT EXISTS Prov (
    Proveedor TEXT PRIMARY KEY,
    Nombre TEXT NOT NULL,
    RFC TEXT,
    Estatus TEXT NOT NULL DEFAULT 'ALTA'
)
"""

TEST_COMPANIES = (
    "La Cantera Desarrollos Mineros",
    "El Peralillo SA de CV",
    "Plaza Galereña",
    "Inmobiliaria Galereña",
    "Icrear",
)

# Tax id ABC010101XYZ is a supplier in tenants 01 and 03 only.
DEFAULT_SUPPLIERS: dict[str, list[tuple[str, str, str, str]]] = {
    "01": [
        ("P00443", "Aceros del Norte SA de CV", "ABC010101XYZ", "ALTA"),
        ("P00510", "Transportes Galeana", "TGA990101AB1", "ALTA"),
    ],
    "02": [("PER-0007", "Servicios Integrales Peralillo", "SIP120315KL9", "ALTA")],
    "03": [
        ("PROV-09", "Aceros del Norte SA de CV", " abc010101xyz ", "ALTA"),
        ("PROV-10", "Transportes Galeana", "TGA990101AB1", "BAJA"),
    ],
    "04": [("IG-3321", "Mantenimiento Urbano", "MUR080808HH2", "BAJA")],
    "05": [("ICR-0001", "Consultoria Icrear", "CIC150505QW3", "ALTA")],
}


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def assert_safe_temp_db_path(db_path: str) -> None:
    resolved = Path(db_path).resolve()
    if not _is_within(resolved, _TEMP_ROOT):
        raise ValueError(f"Temporary DB must live under TEMP: {resolved}")
    if _is_within(resolved, _REPO_ROOT):
        raise ValueError(f"Temporary DB cannot live inside repository: {resolved}")
    for part in resolved.parts:
        if part.lower() == ".tmp_run":
            raise ValueError(f"Temporary DB cannot live under .tmp_run: {resolved}")


def open_sqlite_temp_connection(db_path: str) -> sqlite3.Connection:
    assert_safe_temp_db_path(db_path)
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=DELETE")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def _remove_file_with_retry(path: Path, attempts: int = 8, base_delay: float = 0.05) -> None:
    for attempt in range(attempts):
        try:
            path.unlink(missing_ok=True)
            return
        except PermissionError:
            time.sleep(base_delay * (2**attempt))


def remove_tree_with_retry(path: str, attempts: int = 8, base_delay: float = 0.05) -> None:
    root = Path(path)
    for attempt in range(attempts):
        if not root.exists():
            return
        try:
            shutil.rmtree(root)
            return
        except FileNotFoundError:
            return
        except OSError:
            for current_root, _dirnames, filenames in os.walk(root):
                for name in filenames:
                    try:
                        os.chmod(Path(current_root) / name, 0o600)
                    except OSError:
                        pass
            time.sleep(base_delay * (2**attempt))


@dataclass
class TempDbSandbox:
    """Temp portal database plus one SQLite ERP per tenant, outside the repository."""

    prefix: str = "supplier_portal_tests"
    db_name: str = "portal_test.db"
    suppliers: dict[str, list[tuple[str, str, str, str]]] = field(default_factory=lambda: dict(DEFAULT_SUPPLIERS))

    def __post_init__(self) -> None:
        folder = _TEMP_ROOT / f"{self.prefix}_{uuid.uuid4().hex}"
        folder.mkdir(parents=True, exist_ok=False)
        self.temp_dir = str(folder)
        self.db_path = str(folder / self.db_name)
        self.tenants_dir = str(folder / "erp")
        assert_safe_temp_db_path(self.db_path)
        for tenant_code, rows in self.suppliers.items():
            self.seed_tenant(tenant_code, rows)

    def tenant_db_path(self, tenant_code: str) -> str:
        return str(Path(self.tenants_dir) / f"tenant_{tenant_code}.db")

    def tenant_url(self, tenant_code: str) -> str:
        return "sqlite:///" + self.tenant_db_path(tenant_code)

    def seed_tenant(self, tenant_code: str, rows: list[tuple[str, str, str, str]]) -> None:
        conn = open_sqlite_temp_connection(self.tenant_db_path(tenant_code))
        try:
            conn.execute(PROV_DDL)
            conn.executemany(
                "INSERT OR REPLACE INTO Prov (Proveedor, Nombre, RFC, Estatus) VALUES (?, ?, ?, ?)",
                rows,
            )
        finally:
            conn.close()

    def catalog_entries(self) -> list[dict]:
        """01-05 production, 06-10 test; test tenants point at files never seeded."""
        entries = []
        for offset, environment, database_name in ((0, "production", "Cantera"), (5, "test", "Cantera_Ajustes")):
            for index, name in enumerate(TEST_COMPANIES, start=1):
                code = f"{index + offset:02d}"
                entries.append(
                    {
                        "code": code,
                        "display_name": name,
                        "environment": environment,
                        "database_url": self.tenant_url(code),
                        "erp_company": code,
                        "database_name": database_name,
                    }
                )
        return entries

    def catalog_json(self, entries: list[dict] | None = None) -> str:
        return json.dumps({"tenants": entries if entries is not None else self.catalog_entries()})

    def make_config(self, base_config, **overrides):
        attrs = {
            "DATABASE_DIR": self.temp_dir,
            "PORTAL_DB_PATH": self.db_path,
            "TENANT_CATALOG": self.catalog_json(),
            "TENANT_ENVIRONMENT": "production",
            "TENANT_CONNECT_BACKOFF_MS": 0,
            "TENANT_PROBE_TIMEOUT_SECONDS": 5.0,
            "TENANT_PROBE_MAX_WORKERS": 5,
            "LOG_JSON": False,
        }
        attrs.update(overrides)
        return type("TempConfig", (base_config,), attrs)

    def config_dict(self, base_config, **overrides) -> dict:
        cfg = self.make_config(base_config, **overrides)
        return {key: getattr(cfg, key) for key in dir(cfg) if key.isupper()}

    def cleanup(self) -> None:
        db_file = Path(self.db_path)
        _remove_file_with_retry(db_file)
        _remove_file_with_retry(db_file.with_suffix(db_file.suffix + "-journal"))
        remove_tree_with_retry(self.temp_dir)
