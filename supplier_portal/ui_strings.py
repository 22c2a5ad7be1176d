from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Portal de Fornecedores",
    "tenant": "Empresa",
    "supplier": "Fornecedor",
    "tax_id": "RFC",
    "mapping": "Vinculo",
    "sync": "Sincronizacao",
}


ENVIRONMENT_LABELS: Dict[str, str] = {
    "production": "Producao",
    "test": "Pruebas",
}


SYNC_STATUS_GROUP: List[Dict[str, str]] = [
    {
        "key": "linked",
        "label": "Vinculado",
        "description": "Fornecedor encontrado em ao menos uma empresa e vinculado ao usuario.",
    },
    {
        "key": "not_found",
        "label": "Sem cadastro",
        "description": "Nenhuma empresa possui fornecedor com este RFC.",
    },
    {
        "key": "partial",
        "label": "Parcial",
        "description": "Algumas empresas nao responderam; o vinculo pode estar incompleto.",
    },
    {
        "key": "unavailable",
        "label": "Indisponivel",
        "description": "Nenhuma empresa respondeu. Tente novamente em instantes.",
    },
]


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "sync_completed": "Sincronizacao concluida.",
        "sync_partial": "Sincronizacao concluida com empresas indisponiveis.",
        "mapping_deactivated": "Vinculo desativado.",
    },
    "error": {
        "tax_id_required": "Informe o RFC do fornecedor.",
        "tax_id_invalid": "RFC invalido. Informe 12 ou 13 caracteres.",
        "user_id_required": "Informe o usuario do portal.",
        "tenant_required": "Selecione uma empresa para continuar.",
        "tenant_unknown": "Empresa nao encontrada.",
        "tenant_ambiguous": "Referencia de empresa ambigua. Informe o codigo da empresa.",
        "tenant_unreachable": "Nao conseguimos falar com o ERP desta empresa agora. Tente novamente em instantes.",
        "tenant_not_mapped": "Sua conta ainda nao foi vinculada a esta empresa.",
        "environment_invalid": "Ambiente invalido. Use producao ou pruebas.",
        "discovery_unavailable": "Servico temporariamente indisponivel. Tente novamente.",
        "supplier_not_found": "Nenhum cadastro de fornecedor encontrado para este RFC.",
        "portal_unavailable": "Nao conseguimos acessar a base do portal agora. Tente novamente em instantes.",
        "catalog_invalid": "Catalogo de empresas invalido.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
    },
}


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def environment_label(environment: str, default: str | None = None) -> str:
    return ENVIRONMENT_LABELS.get(str(environment or "").strip().lower(), default or str(environment))


def sync_status_payload(status_key: str) -> Dict[str, str]:
    for item in SYNC_STATUS_GROUP:
        if item["key"] == status_key:
            return dict(item)
    return {"key": status_key, "label": status_key, "description": ""}
