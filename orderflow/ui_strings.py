from __future__ import annotations

from typing import Dict, List


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "pedido": [
        {
            "key": "draft",
            "label": "Rascunho",
            "description": "Pedido gerado e ainda nao enviado ao fornecedor.",
        },
        {
            "key": "sent_to_supplier",
            "label": "Enviado ao fornecedor",
            "description": "Pedido aguardando resposta do fornecedor ou representante.",
        },
        {
            "key": "proposal_pending",
            "label": "Proposta pendente",
            "description": "Fornecedor enviou proposta aguardando decisao do lojista.",
        },
        {
            "key": "counter_proposal_pending",
            "label": "Contraproposta pendente",
            "description": "Lojista enviou contraproposta aguardando o fornecedor.",
        },
        {
            "key": "accepted",
            "label": "Aceito",
            "description": "Condicoes acordadas e aplicadas aos itens do pedido.",
        },
        {
            "key": "finalized",
            "label": "Finalizado",
            "description": "Pedido concluido pelo lojista.",
        },
        {
            "key": "canceled",
            "label": "Cancelado",
            "description": "Pedido encerrado sem continuidade.",
        },
        {
            "key": "rejected",
            "label": "Rejeitado",
            "description": "Proposta do fornecedor recusada pelo lojista.",
        },
    ],
    "proposta": [
        {"key": "pending", "label": "Pendente", "description": "Proposta aguardando resposta."},
        {"key": "accepted", "label": "Aceita", "description": "Proposta aplicada ao pedido."},
        {"key": "rejected", "label": "Recusada", "description": "Proposta encerrada sem aplicacao."},
    ],
}


EXTERNAL_STATUS_LABELS: Dict[int, str] = {
    0: "Em aberto",
    1: "Atendido",
    2: "Cancelado",
    3: "Em andamento",
}


TIMELINE_EVENT_LABELS: Dict[str, str] = {
    "order_sent": "Pedido enviado ao fornecedor",
    "proposal_submitted": "Proposta enviada",
    "counter_proposal_submitted": "Contraproposta enviada",
    "proposal_accepted": "Proposta aceita",
    "proposal_rejected": "Proposta recusada",
    "counter_proposal_accepted": "Contraproposta aceita",
    "counter_proposal_rejected": "Contraproposta recusada",
    "order_finalized": "Pedido finalizado",
    "order_canceled": "Pedido cancelado",
    "external_status_changed": "Situacao no ERP alterada",
    "external_status_resynced": "Situacao no ERP reenviada",
}


SYNC_OUTCOME_LABELS: Dict[str, str] = {
    "synced": "sincronizado com o ERP",
    "skipped": "sem vinculo com o ERP",
    "unavailable": "ERP nao conectado",
    "rate_limited": "ERP com limite de requisicoes excedido",
    "failed": "falha ao sincronizar com o ERP",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "order_sent": "Pedido enviado ao fornecedor.",
        "proposal_submitted": "Proposta enviada ao lojista.",
        "counter_proposal_submitted": "Contraproposta enviada ao fornecedor.",
        "proposal_accepted": "Proposta aceita. Itens do pedido atualizados.",
        "proposal_rejected": "Proposta recusada.",
        "counter_proposal_accepted": "Contraproposta aceita. Itens do pedido atualizados.",
        "counter_proposal_rejected": "Contraproposta recusada. A proposta anterior do fornecedor voltou a ficar pendente.",
        "order_finalized": "Pedido finalizado com sucesso.",
        "order_canceled": "Pedido cancelado com sucesso.",
        "external_status_changed": "Situacao atualizada no ERP.",
        "external_status_resynced": "Situacao reenviada ao ERP.",
        "erp_connected": "ERP conectado com sucesso.",
    },
    "warning": {
        "erp_sync_pending": "Alteracao salva. O ERP sera atualizado em uma proxima tentativa.",
        "erp_rate_limited": "Alteracao salva. O ERP esta limitando requisicoes, a situacao sera reenviada depois.",
        "erp_not_connected": "Alteracao salva. ERP nao conectado, a situacao nao foi enviada.",
    },
    "error": {
        "action_invalid": "Acao invalida para esta operacao.",
        "actor_role_invalid": "Perfil de acesso invalido.",
        "authorization_code_required": "Codigo de autorizacao obrigatorio.",
        "cancel_reason_too_short": "Informe o motivo do cancelamento (minimo 5 caracteres).",
        "counter_proposal_not_allowed": "Contraproposta indisponivel: a negociacao ja teve uma contraproposta recusada.",
        "erp_not_connected": "ERP nao conectado para este workspace.",
        "erp_order_not_linked": "Pedido sem vinculo com o ERP.",
        "erp_rate_limited": "O ERP esta limitando requisicoes. Tente novamente em instantes.",
        "erp_temporarily_unavailable": "Nao conseguimos falar com o ERP agora. Tente novamente em instantes.",
        "external_status_invalid": "Situacao informada e invalida. Use 0, 1, 2 ou 3.",
        "external_status_locked": "Pedido ja atendido ou cancelado no ERP.",
        "items_required": "Informe itens validos para continuar.",
        "item_not_found": "Item nao encontrado no pedido.",
        "order_conflict": "O pedido foi alterado por outra pessoa. Atualize e tente novamente.",
        "order_items_required": "Pedido sem itens nao pode ser enviado.",
        "order_not_found": "Pedido nao encontrado.",
        "order_terminal": "Pedido ja encerrado.",
        "permission_denied": "Voce nao possui permissao para executar esta acao.",
        "proposal_invariant_violated": "Mais de uma proposta pendente para o pedido.",
        "proposal_not_found": "Proposta nao encontrada.",
        "proposal_not_pending": "Proposta nao esta pendente.",
        "proposal_not_latest": "Existe uma proposta mais recente para este pedido.",
        "quantity_invalid": "Quantidade invalida.",
        "discount_invalid": "Desconto deve estar entre 0 e 100.",
        "bonus_invalid": "Bonificacao invalida.",
        "response_invalid": "Resposta invalida. Use accept ou reject.",
        "status_invalid": "Status informado e invalido para esta etapa.",
        "supplier_proposal_required": "Nenhuma proposta do fornecedor pendente.",
        "transition_not_allowed": "Esta acao nao e permitida para o status atual.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
        "validation_error": "Dados invalidos.",
    },
}


def status_keys_for_group(group: str) -> List[str]:
    return [item["key"] for item in STATUS_GROUPS.get(group, [])]


def status_label(group: str, key: str | None) -> str:
    for item in STATUS_GROUPS.get(group, []):
        if item["key"] == key:
            return item["label"]
    return str(key or "")


def external_status_label(code: int | None) -> str | None:
    if code is None:
        return None
    return EXTERNAL_STATUS_LABELS.get(int(code), str(code))


def timeline_event_label(event_type: str, default: str | None = None) -> str:
    label = TIMELINE_EVENT_LABELS.get(str(event_type or "").strip())
    if label:
        return label
    if default is not None:
        return default
    return event_type


def sync_outcome_label(outcome: str | None) -> str:
    return SYNC_OUTCOME_LABELS.get(str(outcome or "").strip(), str(outcome or ""))


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


def warning_message(key: str, default: str | None = None) -> str:
    return get_message("warning", key, default)
