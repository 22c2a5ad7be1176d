import sqlite3
import unittest

from supplier_portal.config import Config
from supplier_portal.contexts.tenancy.application.session_resolver import SessionContextResolver
from supplier_portal.contexts.tenancy.domain.registry import TenantRegistry
from supplier_portal.contexts.tenancy.infrastructure.connection_pool import ConnectionPoolManager, TenantConnection
from supplier_portal.contexts.tenancy.infrastructure.mapping_repository import MappingStore
from supplier_portal.errors import NotMappedError, TenantUnreachableError, UnknownTenantError
from supplier_portal.observability import reset_metrics_for_tests
from tests.helpers.temp_db import TempDbSandbox


class SessionContextResolverTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="session_resolver")
        self.registry = TenantRegistry.from_config(self._temp_db.config_dict(Config))
        self.connector_calls: list[str] = []
        self.down: set[str] = set()

        def connector(code: str, url: str) -> TenantConnection:
            self.connector_calls.append(code)
            if code in self.down:
                raise sqlite3.OperationalError("could not connect to server")
            return TenantConnection.open(code, url)

        self.pools = ConnectionPoolManager(
            self.registry,
            portal_url=self._temp_db.db_path,
            connector=connector,
            backoff_ms=0,
        )
        self.mappings = MappingStore(self.pools)
        self.mappings.init_schema()
        self.resolver = SessionContextResolver(self.registry, self.pools, self.mappings)

    def tearDown(self) -> None:
        self.pools.close_all()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_resolve_returns_supplier_code_and_tenant_connection(self) -> None:
        self.mappings.upsert("42", "01", "P00443")

        context = self.resolver.resolve("42", "01")

        self.assertEqual(context.portal_user_id, "42")
        self.assertEqual(context.tenant_code, "01")
        self.assertEqual(context.internal_supplier_code, "P00443")
        self.assertIs(context.connection, self.pools.acquire("01"))
        row = context.connection.fetch_one(
            "SELECT Nombre FROM Prov WHERE Proveedor = ?",
            (context.internal_supplier_code,),
        )
        self.assertEqual(row["Nombre"], "Aceros del Norte SA de CV")
        self.assertEqual(context.to_dict()["backend"], "sqlite")

    def test_resolve_reuses_cached_connection(self) -> None:
        self.mappings.upsert("42", "01", "P00443")
        self.resolver.resolve("42", "01")
        self.resolver.resolve("42", "01")
        self.assertEqual(self.connector_calls, ["01"])

    def test_missing_mapping_never_triggers_discovery(self) -> None:
        with self.assertRaises(NotMappedError) as ctx:
            self.resolver.resolve("42", "02")
        self.assertEqual(ctx.exception.tenant_code, "02")
        self.assertEqual(ctx.exception.http_status, 404)
        self.assertEqual(self.connector_calls, [])

    def test_deactivated_mapping_is_not_mapped(self) -> None:
        self.mappings.upsert("42", "03", "PROV-09")
        self.mappings.deactivate("42", "03")
        with self.assertRaises(NotMappedError):
            self.resolver.resolve("42", "03")

    def test_unknown_tenant_is_rejected(self) -> None:
        with self.assertRaises(UnknownTenantError):
            self.resolver.resolve("42", "99")

    def test_unreachable_tenant_surfaces_as_integration_error(self) -> None:
        self.mappings.upsert("42", "04", "IG-3321")
        self.down.add("04")
        with self.assertRaises(TenantUnreachableError) as ctx:
            self.resolver.resolve("42", "04")
        self.assertEqual(ctx.exception.http_status, 503)

    def test_available_tenants_lists_active_mappings(self) -> None:
        self.mappings.upsert("42", "03", "PROV-09")
        self.mappings.upsert("42", "01", "P00443")
        self.mappings.upsert("42", "05", "ICR-0001")
        self.mappings.deactivate("42", "05")

        available = self.resolver.available_tenants("42")

        self.assertEqual(
            [(descriptor.code, supplier_code) for descriptor, supplier_code in available],
            [("01", "P00443"), ("03", "PROV-09")],
        )
        self.assertEqual(available[1][0].display_name, "Plaza Galereña")
        self.assertEqual(self.resolver.available_tenants("77"), [])

    def test_available_tenants_skips_codes_missing_from_catalog(self) -> None:
        self.mappings.upsert("42", "01", "P00443")
        self.mappings.upsert("42", "99", "OLD-1")
        available = self.resolver.available_tenants("42")
        self.assertEqual([descriptor.code for descriptor, _ in available], ["01"])


if __name__ == "__main__":
    unittest.main()
