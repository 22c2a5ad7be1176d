from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from supplier_portal.contexts.tenancy.application.auto_sync import AutoSyncOrchestrator
from supplier_portal.contexts.tenancy.application.identity_search import IdentitySearchEngine
from supplier_portal.contexts.tenancy.application.session_resolver import SessionContextResolver
from supplier_portal.contexts.tenancy.domain.registry import TenantRegistry
from supplier_portal.contexts.tenancy.infrastructure.connection_pool import ConnectionPoolManager
from supplier_portal.contexts.tenancy.infrastructure.mapping_repository import MappingStore


@dataclass(frozen=True)
class TenancyServices:
    registry: TenantRegistry
    pools: ConnectionPoolManager
    search: IdentitySearchEngine
    mappings: MappingStore
    sync: AutoSyncOrchestrator
    resolver: SessionContextResolver

    def close(self) -> None:
        self.pools.close_all()


def build_tenancy_services(config, *, registry: TenantRegistry | None = None, **pool_overrides) -> TenancyServices:
    registry = registry or TenantRegistry.from_config(config)
    pools = ConnectionPoolManager.from_config(config, registry, **pool_overrides)
    search = IdentitySearchEngine.from_config(config, registry, pools)
    mappings = MappingStore(pools)
    return TenancyServices(
        registry=registry,
        pools=pools,
        search=search,
        mappings=mappings,
        sync=AutoSyncOrchestrator(search, mappings),
        resolver=SessionContextResolver(registry, pools, mappings),
    )


def get_tenancy_services() -> TenancyServices:
    return current_app.extensions["tenancy"]
