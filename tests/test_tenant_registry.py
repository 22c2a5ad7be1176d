import json
import os
import tempfile
import unittest

from supplier_portal.contexts.tenancy.domain.registry import (
    Environment,
    TenantCatalogError,
    TenantRegistry,
    default_catalog_entries,
    load_catalog,
)
from supplier_portal.errors import UnknownTenantError


def _entry(code: str, environment: str, name: str | None = None, **extra) -> dict:
    payload = {"code": code, "display_name": name or f"Empresa {code}", "environment": environment}
    payload.update(extra)
    return payload


class TenantRegistryDefaultCatalogTest(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = TenantRegistry.from_entries(default_catalog_entries(), base_dir=tempfile.gettempdir())

    def test_default_catalog_splits_production_and_test_ranges(self) -> None:
        production = [item.code for item in self.registry.list_all(Environment.PRODUCTION)]
        test = [item.code for item in self.registry.list_all("test")]
        self.assertEqual(production, ["01", "02", "03", "04", "05"])
        self.assertEqual(test, ["06", "07", "08", "09", "10"])
        self.assertEqual(len(self.registry.list_all()), 10)

    def test_describe_returns_descriptor_with_connection_params(self) -> None:
        descriptor = self.registry.describe("03")
        self.assertEqual(descriptor.display_name, "Plaza Galereña")
        self.assertEqual(descriptor.environment, Environment.PRODUCTION)
        self.assertEqual(descriptor.erp_company, "03")
        self.assertEqual(descriptor.database_name, "Cantera")
        self.assertTrue(descriptor.database_url.startswith("sqlite:///"))

    def test_describe_unknown_code_raises(self) -> None:
        for code in ("00", "11", "", "abc"):
            with self.assertRaises(UnknownTenantError) as ctx:
                self.registry.describe(code)
            self.assertEqual(ctx.exception.http_status, 404)

    def test_descriptor_is_immutable(self) -> None:
        descriptor = self.registry.describe("01")
        with self.assertRaises(Exception):
            descriptor.code = "99"
        with self.assertRaises(TypeError):
            descriptor.connection_params["database_url"] = "sqlite:///other.db"

    def test_public_payload_hides_database_url(self) -> None:
        payload = self.registry.describe("06").to_dict()
        self.assertNotIn("database_url", payload)
        self.assertEqual(payload["environment"], "test")

    def test_default_urls_per_environment_are_applied(self) -> None:
        registry = TenantRegistry.from_entries(
            default_catalog_entries(),
            default_urls={
                Environment.PRODUCTION: "postgresql://erp/cantera",
                Environment.TEST: "postgresql://erp/cantera_ajustes",
            },
        )
        self.assertEqual(registry.describe("02").database_url, "postgresql://erp/cantera")
        self.assertEqual(registry.describe("07").database_url, "postgresql://erp/cantera_ajustes")


class TenantCatalogValidationTest(unittest.TestCase):
    def test_duplicate_codes_rejected(self) -> None:
        with self.assertRaises(TenantCatalogError):
            TenantRegistry.from_entries([_entry("01", "production"), _entry("01", "test")])

    def test_gap_in_environment_range_rejected(self) -> None:
        with self.assertRaises(TenantCatalogError):
            TenantRegistry.from_entries(
                [_entry("01", "production"), _entry("03", "production"), _entry("04", "test")]
            )

    def test_interleaved_ranges_rejected(self) -> None:
        with self.assertRaises(TenantCatalogError):
            TenantRegistry.from_entries(
                [
                    _entry("01", "production"),
                    _entry("02", "test"),
                    _entry("03", "production"),
                ]
            )

    def test_unknown_environment_rejected(self) -> None:
        with self.assertRaises(TenantCatalogError):
            TenantRegistry.from_entries([_entry("01", "staging")])

    def test_empty_catalog_rejected(self) -> None:
        with self.assertRaises(TenantCatalogError):
            TenantRegistry.from_entries([])

    def test_single_environment_catalog_is_valid(self) -> None:
        registry = TenantRegistry.from_entries(
            [_entry("10", "test"), _entry("11", "test")],
            default_environment="test",
        )
        self.assertEqual(registry.codes(), ["10", "11"])
        self.assertEqual(registry.list_all("production"), [])


class TenantCatalogLoadingTest(unittest.TestCase):
    def test_load_inline_json_list_and_object(self) -> None:
        entries = [_entry("01", "production")]
        self.assertEqual(load_catalog(json.dumps(entries)), entries)
        self.assertEqual(load_catalog(json.dumps({"tenants": entries})), entries)

    def test_load_from_file(self) -> None:
        entries = [_entry("01", "production"), _entry("02", "test")]
        handle, path = tempfile.mkstemp(suffix=".json")
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                json.dump({"tenants": entries}, stream)
            self.assertEqual(load_catalog(path), entries)
        finally:
            os.remove(path)

    def test_missing_file_and_bad_json_raise(self) -> None:
        with self.assertRaises(TenantCatalogError):
            load_catalog(os.path.join(tempfile.gettempdir(), "nao_existe_catalogo.json"))
        with self.assertRaises(TenantCatalogError):
            load_catalog("{not json")

    def test_empty_source_uses_default_catalog(self) -> None:
        self.assertEqual(len(load_catalog(None)), 10)

    def test_from_config_reads_environment_and_catalog(self) -> None:
        registry = TenantRegistry.from_config(
            {
                "BASE_DIR": tempfile.gettempdir(),
                "TENANT_CATALOG": json.dumps([_entry("01", "production"), _entry("02", "test")]),
                "TENANT_ENVIRONMENT": "pruebas",
            }
        )
        self.assertEqual(registry.default_environment, Environment.TEST)
        self.assertIn("01", registry)
        self.assertNotIn("03", registry)

    def test_from_config_rejects_unknown_environment(self) -> None:
        with self.assertRaises(TenantCatalogError):
            TenantRegistry.from_config({"TENANT_ENVIRONMENT": "staging"})


class ResolveReferenceTest(unittest.TestCase):
    def setUp(self) -> None:
        entries = [
            _entry("01", "production", "La Cantera Desarrollos Mineros", erp_company="A", database_name="Cantera"),
            _entry("02", "production", "Plaza Galereña", erp_company="B", database_name="Cantera", company_slug="plaza-galerena"),
            _entry("03", "production", "Inmobiliaria Galereña", erp_company="B", database_name="Galbd"),
            _entry("04", "test", "La Cantera Desarrollos Mineros", erp_company="A", database_name="Cantera_Ajustes"),
        ]
        self.registry = TenantRegistry.from_entries(entries, default_environment="production")

    def test_direct_code_wins(self) -> None:
        self.assertEqual(self.registry.resolve_reference("04").code, "04")

    def test_erp_company_with_database_name(self) -> None:
        descriptor = self.registry.resolve_reference("B", database_name="galbd")
        self.assertEqual(descriptor.code, "03")

    def test_erp_company_alone_when_unique(self) -> None:
        self.assertEqual(self.registry.resolve_reference("A").code, "01")
        self.assertEqual(self.registry.resolve_reference("A", environment="test").code, "04")

    def test_erp_company_shared_is_ambiguous(self) -> None:
        with self.assertRaises(UnknownTenantError) as ctx:
            self.registry.resolve_reference("B")
        self.assertEqual(ctx.exception.code, "tenant_ambiguous")

    def test_display_name_is_case_and_accent_insensitive(self) -> None:
        self.assertEqual(self.registry.resolve_reference("plaza galerena").code, "02")
        self.assertEqual(self.registry.resolve_reference("  INMOBILIARIA   GALEREÑA ").code, "03")

    def test_company_slug_matches(self) -> None:
        self.assertEqual(self.registry.resolve_reference("plaza-galerena").code, "02")

    def test_unmatched_reference_raises(self) -> None:
        with self.assertRaises(UnknownTenantError) as ctx:
            self.registry.resolve_reference("Icrear")
        self.assertEqual(ctx.exception.code, "tenant_unknown")
        with self.assertRaises(UnknownTenantError):
            self.registry.resolve_reference("   ")


if __name__ == "__main__":
    unittest.main()
