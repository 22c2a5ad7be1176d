from __future__ import annotations

from pathlib import Path


PORTAL_MAPPING_TABLE = "portal_provider_mappings"


def is_postgres_url(url: str | None) -> bool:
    return str(url or "").strip().lower().startswith(("postgres://", "postgresql://", "postgresql+"))


def normalize_postgres_dsn(url: str) -> str:
    raw = str(url or "").strip()
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    if raw.startswith("postgresql+"):
        # SQLAlchemy driver suffix (postgresql+psycopg2://) is not a libpq DSN.
        _scheme, _sep, rest = raw.partition("://")
        return "postgresql://" + rest
    return raw


def sqlite_path_from_url(url: str) -> str:
    raw = str(url or "").strip()
    if not raw:
        raise ValueError("URL de banco SQLite vazia.")
    for prefix in ("sqlite+pysqlite:///", "sqlite:///"):
        if raw.startswith(prefix):
            path = raw[len(prefix) :]
            return path or ":memory:"
    if raw in {"sqlite://", ":memory:"}:
        return ":memory:"
    return str(Path(raw).expanduser())


def convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


_SQLITE_PORTAL_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS {PORTAL_MAPPING_TABLE} (
        id TEXT PRIMARY KEY,
        portal_user_id TEXT NOT NULL,
        tenant_code TEXT NOT NULL,
        internal_supplier_code TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deactivated_at TEXT
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_portal_provider_mappings_user
    ON {PORTAL_MAPPING_TABLE} (portal_user_id)
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS ux_portal_provider_mappings_active
    ON {PORTAL_MAPPING_TABLE} (portal_user_id, tenant_code)
    WHERE active = 1
    """,
)


_POSTGRES_PORTAL_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS {PORTAL_MAPPING_TABLE} (
        id TEXT PRIMARY KEY,
        portal_user_id TEXT NOT NULL,
        tenant_code TEXT NOT NULL,
        internal_supplier_code TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        deactivated_at TIMESTAMPTZ
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_portal_provider_mappings_user
    ON {PORTAL_MAPPING_TABLE} (portal_user_id)
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS ux_portal_provider_mappings_active
    ON {PORTAL_MAPPING_TABLE} (portal_user_id, tenant_code)
    WHERE active = 1
    """,
)


def init_portal_schema(conn) -> None:
    """Create the mapping table and its indexes on a portal connection.

    ``conn`` is a ``TenantConnection`` (or anything with ``backend`` and
    ``execute``). Safe to call repeatedly.
    """
    statements = _POSTGRES_PORTAL_SCHEMA if conn.backend == "postgres" else _SQLITE_PORTAL_SCHEMA
    for statement in statements:
        conn.execute(statement)
