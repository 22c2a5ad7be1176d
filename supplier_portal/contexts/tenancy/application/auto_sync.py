from __future__ import annotations

import logging
from typing import Iterable

from supplier_portal.contexts.tenancy.application.identity_search import (
    IdentitySearchEngine,
    normalize_tax_id,
    validate_tax_id,
)
from supplier_portal.contexts.tenancy.domain.contracts import SyncResult
from supplier_portal.contexts.tenancy.infrastructure.mapping_repository import WRITE_ACTIONS, MappingStore
from supplier_portal.errors import AppError, PartialDiscoveryFailure
from supplier_portal.observability import observe_sync


class AutoSyncOrchestrator:
    """Cold path: discover a supplier's tenants and record one mapping per match."""

    def __init__(self, search: IdentitySearchEngine, mappings: MappingStore) -> None:
        self._search = search
        self._mappings = mappings
        self._logger = logging.getLogger("supplier_portal")

    def sync(self, portal_user_id: str, tax_id: str) -> SyncResult:
        user_id = str(portal_user_id).strip()
        outcome = self._search.search(tax_id)
        result = SyncResult(
            portal_user_id=user_id,
            tax_id=outcome.tax_id,
            matches_found=len(outcome.matches),
            per_tenant_errors=list(outcome.per_tenant_errors),
            probed_tenants=len(outcome.probed_tenants),
        )

        for match in outcome.matches:
            mapping, action = self._mappings.upsert_with_action(
                user_id,
                match.tenant_code,
                match.internal_supplier_code,
            )
            result.mappings.append(mapping)
            result.actions[match.tenant_code] = action
            if action in WRITE_ACTIONS:
                result.mappings_written += 1

        observe_sync(result.status)
        log_method = self._logger.warning if result.partial_failure else self._logger.info
        log_method(
            "tenant_sync_completed",
            extra={
                "portal_user_id": user_id,
                "matches_found": result.matches_found,
                "mappings_written": result.mappings_written,
                "tenants_probed": result.probed_tenants,
                "tenants_failed": len(result.per_tenant_errors),
                "sync_status": result.status,
            },
        )
        return result

    def sync_strict(self, portal_user_id: str, tax_id: str) -> SyncResult:
        """Like ``sync`` but raises when no tenant could be probed at all."""
        result = self.sync(portal_user_id, tax_id)
        if result.all_failed:
            raise PartialDiscoveryFailure(result.per_tenant_errors, probed_tenants=result.probed_tenants)
        return result

    def sync_many(self, pairs: Iterable[tuple[str, str]]) -> dict:
        summary = {"total": 0, "synced": 0, "not_found": 0, "failed": 0, "errors": []}
        for portal_user_id, tax_id in pairs:
            summary["total"] += 1
            try:
                result = self.sync(portal_user_id, validate_tax_id(tax_id))
            except AppError as exc:
                summary["failed"] += 1
                summary["errors"].append(
                    {"portal_user_id": str(portal_user_id), "tax_id": normalize_tax_id(tax_id), "error": exc.code}
                )
                self._logger.warning(
                    "tenant_sync_batch_item_failed",
                    extra={"portal_user_id": str(portal_user_id), "error_code": exc.code, "details": exc.details},
                )
                continue

            if result.all_failed:
                summary["failed"] += 1
                summary["errors"].append(
                    {
                        "portal_user_id": result.portal_user_id,
                        "tax_id": result.tax_id,
                        "error": "discovery_unavailable",
                    }
                )
            elif result.matches_found > 0:
                summary["synced"] += 1
            else:
                summary["not_found"] += 1

        self._logger.info(
            "tenant_sync_batch_completed",
            extra={key: value for key, value in summary.items() if key != "errors"},
        )
        return summary
