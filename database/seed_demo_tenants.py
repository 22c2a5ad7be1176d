from __future__ import annotations

import os
import sqlite3
import sys
from pathlib import Path

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from supplier_portal.config import Config
from supplier_portal.contexts.tenancy.domain.registry import TenantRegistry
from supplier_portal.db import is_postgres_url, sqlite_path_from_url


PROV_DDL = """
CREATE TABLE IF NOT EXISTS Prov (
    Proveedor TEXT PRIMARY KEY,
    Nombre TEXT NOT NULL,
    RFC TEXT,
    Estatus TEXT NOT NULL DEFAULT 'ALTA'
)
"""

# (tenant code, supplier code, name, rfc, status)
DEMO_SUPPLIERS = [
    ("01", "P00443", "Aceros del Norte SA de CV", "ABC010101XYZ", "ALTA"),
    ("01", "P00510", "Transportes Galeana", "TGA990101AB1", "ALTA"),
    ("02", "PER-0007", "Servicios Integrales Peralillo", "SIP120315KL9", "ALTA"),
    ("03", "PROV-09", "Aceros del Norte SA de CV", "ABC010101XYZ", "ALTA"),
    ("04", "IG-3321", "Mantenimiento Urbano", "MUR080808HH2", "BAJA"),
    ("05", "ICR-0001", "Consultoria Icrear", "CIC150505QW3", "ALTA"),
    ("06", "P00443", "Aceros del Norte SA de CV", "ABC010101XYZ", "ALTA"),
    ("07", "PER-0007", "Servicios Integrales Peralillo", "SIP120315KL9", "ALTA"),
    ("08", "PROV-09", "Aceros del Norte SA de CV", "ABC010101XYZ", "ALTA"),
    ("09", "IG-3321", "Mantenimiento Urbano", "MUR080808HH2", "BAJA"),
    ("10", "ICR-0001", "Consultoria Icrear", "CIC150505QW3", "ALTA"),
]


def seed_tenant(db_path: str, rows: list[tuple[str, str, str, str]]) -> int:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(PROV_DDL)
        conn.executemany(
            "INSERT OR REPLACE INTO Prov (Proveedor, Nombre, RFC, Estatus) VALUES (?, ?, ?, ?)",
            rows,
        )
        conn.commit()
    finally:
        conn.close()
    return len(rows)


def main() -> None:
    config = Config()
    registry = TenantRegistry.from_config({key: getattr(config, key) for key in dir(config) if key.isupper()})
    for descriptor in registry.list_all():
        if is_postgres_url(descriptor.database_url):
            print(f"{descriptor.code}: base PostgreSQL, seed ignorado.")
            continue
        db_path = sqlite_path_from_url(descriptor.database_url)
        rows = [row[1:] for row in DEMO_SUPPLIERS if row[0] == descriptor.code]
        count = seed_tenant(db_path, rows)
        print(f"{descriptor.code}: {count} fornecedor(es) em {db_path}")


if __name__ == "__main__":
    main()
