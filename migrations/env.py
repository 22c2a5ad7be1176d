from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from supplier_portal.db_migrations import to_sqlalchemy_url


config = context.config

if config.config_file_name is not None and not config.attributes.get("portal_url_locked"):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = None


def _portal_url() -> str:
    configured = config.get_main_option("sqlalchemy.url")
    if config.attributes.get("portal_url_locked"):
        return to_sqlalchemy_url(configured)
    return to_sqlalchemy_url(os.environ.get("PORTAL_DATABASE_URL") or configured)


def run_migrations_offline() -> None:
    context.configure(
        url=_portal_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = _portal_url()

    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        future=True,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
