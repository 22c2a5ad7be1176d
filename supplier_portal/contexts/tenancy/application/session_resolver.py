from __future__ import annotations

from supplier_portal.contexts.tenancy.domain.contracts import SessionContext
from supplier_portal.contexts.tenancy.domain.registry import TenantDescriptor, TenantRegistry
from supplier_portal.contexts.tenancy.infrastructure.connection_pool import ConnectionPoolManager
from supplier_portal.contexts.tenancy.infrastructure.mapping_repository import MappingStore
from supplier_portal.errors import NotMappedError


class SessionContextResolver:
    """Hot path: route a portal session to its tenant connection and supplier code.

    Never runs discovery; a missing mapping is reported as ``NotMappedError``.
    """

    def __init__(self, registry: TenantRegistry, pools: ConnectionPoolManager, mappings: MappingStore) -> None:
        self._registry = registry
        self._pools = pools
        self._mappings = mappings

    def resolve(self, portal_user_id: str, tenant_code: str) -> SessionContext:
        descriptor = self._registry.describe(tenant_code)
        user_id = str(portal_user_id).strip()
        mapping = self._mappings.find_active(user_id, descriptor.code)
        if mapping is None:
            raise NotMappedError(user_id, descriptor.code)
        return SessionContext(
            portal_user_id=user_id,
            tenant_code=descriptor.code,
            internal_supplier_code=mapping.internal_supplier_code,
            connection=self._pools.acquire(descriptor.code),
        )

    def available_tenants(self, portal_user_id: str) -> list[tuple[TenantDescriptor, str]]:
        """Tenants this user may pick at login, with the supplier code in each."""
        available = []
        for mapping in self._mappings.list_active(str(portal_user_id).strip()):
            if mapping.tenant_code not in self._registry:
                continue
            available.append((self._registry.describe(mapping.tenant_code), mapping.internal_supplier_code))
        return available
