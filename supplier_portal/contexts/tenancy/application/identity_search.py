from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from supplier_portal.contexts.tenancy.domain.contracts import SearchOutcome, SupplierMatch
from supplier_portal.contexts.tenancy.domain.registry import Environment, TenantRegistry
from supplier_portal.contexts.tenancy.infrastructure.connection_pool import ConnectionPoolManager
from supplier_portal.errors import ValidationError
from supplier_portal.observability import bind_request_id, current_request_id, observe_tenant_probe


TAX_ID_MIN_LENGTH = 12
TAX_ID_MAX_LENGTH = 13
_QUEUE_POLL_SECONDS = 0.05

# Same statement for every tenant; only the bound tax id varies.
# Active records sort first so a tenant with an old BAJA row still links the current code.
SUPPLIER_LOOKUP_SQL = """
    SELECT Proveedor AS supplier_code,
           Nombre AS supplier_name,
           RFC AS tax_id,
           Estatus AS status
    FROM Prov
    WHERE UPPER(TRIM(RFC)) = ?
    ORDER BY CASE WHEN UPPER(TRIM(Estatus)) = 'ALTA' THEN 0 ELSE 1 END, Proveedor
"""


def normalize_tax_id(value: object | None) -> str:
    return str(value or "").strip().upper()


def validate_tax_id(value: object | None) -> str:
    normalized = normalize_tax_id(value)
    if not normalized:
        raise ValidationError(code="tax_id_required", message_key="tax_id_required", details="RFC vazio")
    if not (TAX_ID_MIN_LENGTH <= len(normalized) <= TAX_ID_MAX_LENGTH):
        raise ValidationError(
            code="tax_id_invalid",
            message_key="tax_id_invalid",
            details=f"RFC com {len(normalized)} caracteres",
        )
    return normalized


class IdentitySearchEngine:
    """Finds which tenants know a supplier by tax id, probing them in parallel."""

    def __init__(
        self,
        registry: TenantRegistry,
        pools: ConnectionPoolManager,
        *,
        max_workers: int = 4,
        probe_timeout_seconds: float = 10.0,
        environment: Environment | str | None = None,
    ) -> None:
        self._registry = registry
        self._pools = pools
        self._max_workers = max(1, int(max_workers))
        self._probe_timeout = max(0.001, float(probe_timeout_seconds))
        self._environment = Environment.parse(environment) if environment else registry.default_environment
        self._logger = logging.getLogger("supplier_portal")

    @classmethod
    def from_config(cls, config, registry: TenantRegistry, pools: ConnectionPoolManager) -> "IdentitySearchEngine":
        return cls(
            registry,
            pools,
            max_workers=config.get("TENANT_PROBE_MAX_WORKERS", 4),
            probe_timeout_seconds=config.get("TENANT_PROBE_TIMEOUT_SECONDS", 10.0),
            environment=config.get("TENANT_ENVIRONMENT") or None,
        )

    @property
    def environment(self) -> Environment:
        return self._environment

    def search_by_tax_id(self, tax_id: str) -> list[SupplierMatch]:
        return self.search(tax_id).matches

    def search(self, tax_id: str, *, environment: Environment | str | None = None) -> SearchOutcome:
        normalized = normalize_tax_id(tax_id)
        descriptors = self._registry.list_all(environment or self._environment)
        outcome = SearchOutcome(tax_id=normalized, probed_tenants=[item.code for item in descriptors])
        if not normalized or not descriptors:
            return outcome

        request_id = current_request_id(default="n/a")
        workers = min(self._max_workers, len(descriptors))
        # Queued probes only start once a worker frees up; past this ceiling they are given up on.
        waves = -(-len(descriptors) // workers)
        ceiling = time.monotonic() + self._probe_timeout * waves
        started_at: dict[str, float] = {}
        found: dict[str, SupplierMatch] = {}
        failed: dict[str, str] = {}

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tenant-probe")
        try:
            pending: dict[Future, str] = {
                executor.submit(self._timed_probe, item.code, normalized, request_id, started_at): item.code
                for item in descriptors
            }
            while pending:
                now = time.monotonic()
                for future, tenant_code in list(pending.items()):
                    if future.done():
                        del pending[future]
                        self._collect(tenant_code, future, found, failed)
                        continue
                    deadline = started_at[tenant_code] + self._probe_timeout if tenant_code in started_at else ceiling
                    if now >= deadline:
                        del pending[future]
                        future.cancel()
                        self._timed_out(tenant_code, failed)
                if not pending:
                    break
                deadlines = [
                    started_at[code] + self._probe_timeout if code in started_at else ceiling
                    for code in pending.values()
                ]
                timeout = max(0.0, min(deadlines) - time.monotonic())
                if any(code not in started_at for code in pending.values()):
                    # A queued probe gets its own deadline once it starts.
                    timeout = min(timeout, _QUEUE_POLL_SECONDS)
                wait(list(pending), timeout=timeout, return_when=FIRST_COMPLETED)
        finally:
            # A probe stuck past its timeout keeps its worker until the driver gives up.
            executor.shutdown(wait=False, cancel_futures=True)

        for item in descriptors:
            if item.code in found:
                outcome.matches.append(found[item.code])
            elif item.code in failed:
                outcome.per_tenant_errors.append((item.code, failed[item.code]))

        self._logger.info(
            "tenant_search_completed",
            extra={
                "tenants_probed": len(outcome.probed_tenants),
                "matches_found": len(outcome.matches),
                "tenants_failed": len(outcome.per_tenant_errors),
            },
        )
        return outcome

    def _collect(self, tenant_code: str, future: Future, found: dict, failed: dict) -> None:
        try:
            match, elapsed = future.result()
        except Exception as exc:
            failed[tenant_code] = str(exc) or exc.__class__.__name__
            return
        if elapsed > self._probe_timeout:
            self._timed_out(tenant_code, failed)
        elif match is not None:
            found[tenant_code] = match

    def _timed_out(self, tenant_code: str, failed: dict) -> None:
        failed[tenant_code] = f"timeout apos {self._probe_timeout:g}s"
        observe_tenant_probe(tenant_code, "timeout", self._probe_timeout * 1000.0)
        self._logger.warning(
            "tenant_probe_timeout",
            extra={"tenant_code": tenant_code, "timeout_seconds": self._probe_timeout},
        )

    def _timed_probe(
        self, tenant_code: str, tax_id: str, request_id: str, started_at: dict[str, float]
    ) -> tuple[SupplierMatch | None, float]:
        started = started_at[tenant_code] = time.monotonic()
        match = self._probe(tenant_code, tax_id, request_id)
        return match, time.monotonic() - started

    def _probe(self, tenant_code: str, tax_id: str, request_id: str) -> SupplierMatch | None:
        """Return the tenant's supplier record for ``tax_id``, one per tenant at most."""
        with bind_request_id(request_id):
            started = time.perf_counter()
            try:
                rows = self._pools.run(tenant_code, lambda conn: conn.fetch_all(SUPPLIER_LOOKUP_SQL, (tax_id,)))
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - started) * 1000.0
                observe_tenant_probe(tenant_code, "error", elapsed_ms)
                self._logger.warning(
                    "tenant_probe_failed",
                    extra={
                        "tenant_code": tenant_code,
                        "error_type": exc.__class__.__name__,
                        "error": str(exc),
                        "duration_ms": round(elapsed_ms, 2),
                    },
                )
                raise
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            candidates = [SupplierMatch.from_row(tenant_code, row) for row in rows]
            match = next((item for item in candidates if item.internal_supplier_code), None)
            observe_tenant_probe(tenant_code, "match" if match else "miss", elapsed_ms)
            self._logger.debug(
                "tenant_probe_completed",
                extra={
                    "tenant_code": tenant_code,
                    "rows": len(candidates),
                    "supplier_code": match.internal_supplier_code if match else None,
                    "duration_ms": round(elapsed_ms, 2),
                },
            )
            return match
