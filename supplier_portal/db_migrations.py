from __future__ import annotations

from pathlib import Path

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from flask import Flask

from supplier_portal.db import is_postgres_url, sqlite_path_from_url


MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"
ALEMBIC_INI = Path(__file__).resolve().parents[1] / "alembic.ini"


def to_sqlalchemy_url(portal_url: str) -> str:
    raw = (portal_url or "").strip()
    if not raw:
        raise RuntimeError("PORTAL_DB_PATH indefinido para migrations.")
    if is_postgres_url(raw):
        if raw.startswith("postgres://"):
            return "postgresql://" + raw[len("postgres://") :]
        return raw
    path = sqlite_path_from_url(raw)
    if path == ":memory:":
        return "sqlite://"
    return f"sqlite:///{Path(path).resolve().as_posix()}"


def build_alembic_config(app: Flask) -> AlembicConfig:
    if not ALEMBIC_INI.exists():
        raise RuntimeError("alembic.ini nao encontrado na raiz do projeto.")
    alembic_cfg = AlembicConfig(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("script_location", MIGRATIONS_DIR.as_posix())
    alembic_cfg.set_main_option("sqlalchemy.url", to_sqlalchemy_url(app.config["PORTAL_DB_PATH"]))
    # env.py honours this over PORTAL_DATABASE_URL so a test app never touches the real portal.
    alembic_cfg.attributes["portal_url_locked"] = True
    return alembic_cfg


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Migrations da base do portal (Alembic)."""

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(build_alembic_config(app), revision)
        click.echo(f"Base do portal migrada ate {revision}.")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    def db_downgrade(revision: str) -> None:
        command.downgrade(build_alembic_config(app), revision)
        click.echo(f"Rollback da base do portal ate {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        command.current(build_alembic_config(app), verbose=True)

    @db_group.command("stamp")
    @click.argument("revision", required=False, default="head")
    def db_stamp(revision: str) -> None:
        """Marca a revisao sem executar DDL (bases criadas por DB_AUTO_INIT)."""
        command.stamp(build_alembic_config(app), revision)
        click.echo(f"Base do portal marcada em {revision}.")
