from __future__ import annotations

from typing import Any, Dict

from supplier_portal.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "Nao foi possivel concluir a operacao.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "unexpected_error"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "unexpected_error"
    default_http_status = 400
    default_critical = False


class UnknownTenantError(UserActionError):
    """Tenant code (or company reference) outside the configured catalogue. Not retried."""

    default_code = "tenant_unknown"
    default_message_key = "tenant_unknown"
    default_http_status = 404
    default_critical = False

    def __init__(self, tenant_code: str | None = None, **kwargs: Any) -> None:
        self.tenant_code = str(tenant_code or "").strip() or None
        kwargs.setdefault("details", f"Empresa desconhecida: {self.tenant_code or '-'}")
        super().__init__(**kwargs)


class NotMappedError(UserActionError):
    """No active mapping for (portal user, tenant). Expected signal: run discovery first."""

    default_code = "tenant_not_mapped"
    default_message_key = "tenant_not_mapped"
    default_http_status = 404
    default_critical = False

    def __init__(self, portal_user_id: str, tenant_code: str, **kwargs: Any) -> None:
        self.portal_user_id = str(portal_user_id)
        self.tenant_code = str(tenant_code)
        kwargs.setdefault(
            "details",
            f"Usuario {self.portal_user_id} sem vinculo ativo com a empresa {self.tenant_code}",
        )
        super().__init__(**kwargs)


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "tenant_unreachable"
    default_http_status = 503
    default_critical = False


class TenantUnreachableError(IntegrationError):
    """Transient failure opening or using a tenant database."""

    default_code = "tenant_unreachable"
    default_message_key = "tenant_unreachable"

    def __init__(self, tenant_code: str, details: str | None = None, **kwargs: Any) -> None:
        self.tenant_code = str(tenant_code)
        super().__init__(details=details or f"Empresa {self.tenant_code} indisponivel", **kwargs)


class PartialDiscoveryFailure(IntegrationError):
    """Some (or all) tenants could not be probed during discovery.

    Carried on the sync result; raised only when the caller asks for a
    strict outcome (every tenant failed).
    """

    default_code = "discovery_partial_failure"
    default_message_key = "discovery_unavailable"

    def __init__(
        self,
        failed_tenants: list[tuple[str, str]],
        *,
        probed_tenants: int,
        **kwargs: Any,
    ) -> None:
        self.failed_tenants = list(failed_tenants)
        self.probed_tenants = int(probed_tenants)
        codes = ", ".join(code for code, _reason in self.failed_tenants) or "-"
        kwargs.setdefault(
            "details",
            f"{len(self.failed_tenants)} de {self.probed_tenants} empresas sem resposta: {codes}",
        )
        kwargs.setdefault(
            "payload",
            {"failed_tenants": [{"tenant_code": code, "error": reason} for code, reason in self.failed_tenants]},
        )
        super().__init__(**kwargs)

    @property
    def total(self) -> bool:
        return self.probed_tenants > 0 and len(self.failed_tenants) >= self.probed_tenants


class PortalUnavailableError(IntegrationError):
    default_code = "portal_unavailable"
    default_message_key = "portal_unavailable"


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
