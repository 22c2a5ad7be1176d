from __future__ import annotations

import csv
import json
from pathlib import Path

import click
from flask import Flask

from supplier_portal.contexts.tenancy.application.identity_search import validate_tax_id
from supplier_portal.contexts.tenancy.domain.registry import Environment
from supplier_portal.errors import AppError
from supplier_portal.ui_strings import environment_label


def _read_pairs(path: Path) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        missing = {"user_id", "tax_id"} - set(reader.fieldnames or [])
        if missing:
            raise click.ClickException(f"Colunas ausentes no CSV: {', '.join(sorted(missing))}")
        for row in reader:
            user_id = str(row.get("user_id") or "").strip()
            tax_id = str(row.get("tax_id") or "").strip()
            if user_id and tax_id:
                pairs.append((user_id, tax_id))
    return pairs


def _environment_option(_ctx, _param, value: str | None) -> Environment | None:
    if not value:
        return None
    try:
        return Environment.parse(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def register_tenancy_cli(app: Flask) -> None:
    @app.cli.group("tenancy")
    def tenancy_group() -> None:
        """Descoberta de empresas e vinculos de fornecedores."""

    @tenancy_group.command("list")
    @click.option("--environment", "environment", default=None, callback=_environment_option, help="production ou test")
    def tenancy_list(environment: Environment | None) -> None:
        registry = app.extensions["tenancy"].registry
        for descriptor in registry.list_all(environment):
            click.echo(
                f"{descriptor.code}  {descriptor.display_name}  "
                f"[{environment_label(descriptor.environment.value)}]  erp={descriptor.erp_company}"
            )

    @tenancy_group.command("probe")
    @click.option("--environment", "environment", default=None, callback=_environment_option, help="production ou test")
    def tenancy_probe(environment: Environment | None) -> None:
        services = app.extensions["tenancy"]
        failures = 0
        for descriptor in services.registry.list_all(environment):
            try:
                services.pools.run(descriptor.code, lambda conn: conn.ping())
            except AppError as exc:
                failures += 1
                click.echo(f"{descriptor.code}  FALHA  {exc.details or exc.code}")
                continue
            click.echo(f"{descriptor.code}  OK")
        if failures:
            raise click.ClickException(f"{failures} empresa(s) sem conexao.")

    @tenancy_group.command("sync")
    @click.argument("user_id")
    @click.argument("tax_id")
    def tenancy_sync(user_id: str, tax_id: str) -> None:
        services = app.extensions["tenancy"]
        try:
            normalized = validate_tax_id(tax_id)
        except AppError as exc:
            raise click.BadParameter(exc.user_message(), param_hint="TAX_ID") from exc
        result = services.sync.sync(user_id, normalized)
        click.echo(json.dumps(result.to_dict(), ensure_ascii=True, indent=2, default=str))
        if result.all_failed:
            raise click.ClickException("Nenhuma empresa respondeu.")

    @tenancy_group.command("sync-batch")
    @click.argument("csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
    def tenancy_sync_batch(csv_path: Path) -> None:
        services = app.extensions["tenancy"]
        summary = services.sync.sync_many(_read_pairs(csv_path))
        click.echo(json.dumps(summary, ensure_ascii=True, indent=2))
