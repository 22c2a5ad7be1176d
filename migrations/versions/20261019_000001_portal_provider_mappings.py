"""Create portal_provider_mappings with one active row per user and tenant.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TABLE = "portal_provider_mappings"


def _is_postgres(bind) -> bool:
    return str(getattr(getattr(bind, "dialect", None), "name", "") or "").lower().startswith("postgres")


def _now_default(bind):
    return sa.text("NOW()") if _is_postgres(bind) else sa.text("CURRENT_TIMESTAMP")


def _timestamp_type():
    # SQLite keeps the ISO-8601 text written by the mapping store.
    return sa.Text().with_variant(postgresql.TIMESTAMP(timezone=True), "postgresql")


def _table_exists(bind, table_name: str) -> bool:
    return bool(sa.inspect(bind).has_table(table_name))


def upgrade() -> None:
    bind = op.get_bind()
    now_default = _now_default(bind)
    timestamp = _timestamp_type()

    if not _table_exists(bind, TABLE):
        op.create_table(
            TABLE,
            sa.Column("id", sa.Text(), nullable=False),
            sa.Column("portal_user_id", sa.Text(), nullable=False),
            sa.Column("tenant_code", sa.Text(), nullable=False),
            sa.Column("internal_supplier_code", sa.Text(), nullable=False),
            sa.Column("active", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("created_at", timestamp, nullable=False, server_default=now_default),
            sa.Column("updated_at", timestamp, nullable=False, server_default=now_default),
            sa.Column("deactivated_at", timestamp, nullable=True),
            sa.PrimaryKeyConstraint("id", name="pk_portal_provider_mappings"),
        )
    op.execute(f"CREATE INDEX IF NOT EXISTS ix_portal_provider_mappings_user ON {TABLE} (portal_user_id)")
    op.execute(
        f"""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_portal_provider_mappings_active
        ON {TABLE} (portal_user_id, tenant_code)
        WHERE active = 1
        """
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ux_portal_provider_mappings_active")
    op.execute("DROP INDEX IF EXISTS ix_portal_provider_mappings_user")
    bind = op.get_bind()
    if _table_exists(bind, TABLE):
        op.drop_table(TABLE)
