from __future__ import annotations

import math
from typing import Any, Dict, List

from flask import Blueprint, current_app, jsonify, request

from orderflow.contexts.erp.application.sync_client import get_erp_sync_client
from orderflow.contexts.negotiation.application.service import NegotiationService
from orderflow.contexts.negotiation.domain.model import ProposalDraft, ProposalLine, ProposalTerms
from orderflow.domain.contracts import CancelOrderInput, ExternalStatusInput
from orderflow.errors import ValidationError
from orderflow.policies import current_actor
from orderflow.tenant import scoped_tenant_id


negotiation_bp = Blueprint("negotiation", __name__)


def _service(actor) -> NegotiationService:
    return NegotiationService(
        actor.tenant_id,
        sync_client=get_erp_sync_client(),
        public_base_url=current_app.config.get("PUBLIC_BASE_URL"),
    )


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _optional_float(value: Any, field_name: str) -> float | None:
    if value in (None, ""):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(code="validation_error", payload={"field": field_name}) from exc
    if not math.isfinite(parsed):
        raise ValidationError(code="validation_error", payload={"field": field_name})
    return parsed


def _optional_int(value: Any, field_name: str) -> int | None:
    parsed = _optional_float(value, field_name)
    return None if parsed is None else int(parsed)


def _proposal_draft_from_payload(payload: Dict[str, Any]) -> ProposalDraft:
    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError(code="items_required")

    lines: List[ProposalLine] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValidationError(code="items_required")
        order_item_id = _optional_int(raw.get("order_item_id"), "order_item_id")
        quantity = _optional_float(raw.get("quantity"), "quantity")
        if order_item_id is None:
            raise ValidationError(code="item_not_found")
        if quantity is None:
            raise ValidationError(code="quantity_invalid")
        lines.append(
            ProposalLine(
                order_item_id=order_item_id,
                quantity=quantity,
                discount_pct=_optional_float(raw.get("discount_pct"), "discount_pct") or 0.0,
                bonus_quantity=_optional_float(raw.get("bonus_quantity"), "bonus_quantity") or 0.0,
            )
        )

    note = str(payload.get("note") or "").strip() or None
    valid_until = str(payload.get("valid_until") or "").strip() or None
    terms = ProposalTerms(
        min_order_value=_optional_float(payload.get("min_order_value"), "min_order_value"),
        valid_until=valid_until,
        delivery_lead_days=_optional_int(payload.get("delivery_lead_days"), "delivery_lead_days"),
        note=note,
    )
    return ProposalDraft(terms=terms, lines=lines)


@negotiation_bp.route("/api/orders/<int:order_id>", methods=["GET"])
def order_detail(order_id: int):
    actor = current_actor()
    result = _service(actor).get_order(actor, order_id)
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/send", methods=["POST"])
def order_send(order_id: int):
    actor = current_actor()
    result = _service(actor).send_to_supplier(actor, order_id)
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/proposals", methods=["GET", "POST"])
def order_proposals(order_id: int):
    actor = current_actor()
    service = _service(actor)
    if request.method == "GET":
        result = service.list_proposals(actor, order_id)
        return jsonify(result.payload), result.status_code

    draft = _proposal_draft_from_payload(_json_body())
    result = service.submit_proposal(actor, order_id, draft)
    return jsonify(result.payload), 201


@negotiation_bp.route("/api/orders/<int:order_id>/counter-proposal", methods=["POST"])
def order_counter_proposal(order_id: int):
    actor = current_actor()
    draft = _proposal_draft_from_payload(_json_body())
    result = _service(actor).counter_propose(actor, order_id, draft)
    return jsonify(result.payload), 201


@negotiation_bp.route("/api/orders/<int:order_id>/proposals/<int:proposal_id>/accept", methods=["POST"])
def proposal_accept(order_id: int, proposal_id: int):
    actor = current_actor()
    result = _service(actor).accept_proposal(actor, order_id, proposal_id)
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/proposals/<int:proposal_id>/reject", methods=["POST"])
def proposal_reject(order_id: int, proposal_id: int):
    actor = current_actor()
    result = _service(actor).reject_proposal(actor, order_id, proposal_id)
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/counter-proposal/<int:proposal_id>/respond", methods=["POST"])
def counter_proposal_respond(order_id: int, proposal_id: int):
    actor = current_actor()
    response = _json_body().get("response")
    result = _service(actor).respond_to_counter(actor, order_id, proposal_id, response)
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/finalize", methods=["POST"])
def order_finalize(order_id: int):
    actor = current_actor()
    result = _service(actor).finalize(actor, order_id)
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/cancel", methods=["POST"])
def order_cancel(order_id: int):
    actor = current_actor()
    reason = str(_json_body().get("reason") or "")
    result = _service(actor).cancel(actor, CancelOrderInput(order_id=order_id, reason=reason))
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/external-status", methods=["PUT"])
def order_external_status(order_id: int):
    actor = current_actor()
    raw_status = _json_body().get("status_code")
    status_code = _optional_int(raw_status, "status_code")
    if status_code is None:
        raise ValidationError(code="external_status_invalid")
    result = _service(actor).set_external_status(
        actor,
        ExternalStatusInput(order_id=order_id, status_code=status_code),
    )
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/resync", methods=["POST"])
def order_resync(order_id: int):
    actor = current_actor()
    result = _service(actor).resync_external_status(actor, order_id)
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/timeline", methods=["GET"])
def order_timeline(order_id: int):
    actor = current_actor()
    limit = _optional_int(request.args.get("limit"), "limit") or 200
    result = _service(actor).timeline(actor, order_id, limit=max(1, min(limit, 500)))
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/recipient", methods=["GET"])
def order_recipient(order_id: int):
    actor = current_actor()
    result = _service(actor).recipient_payload(actor, order_id)
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/api/orders/<int:order_id>/suggested-quantities", methods=["POST"])
def order_suggested_quantities(order_id: int):
    actor = current_actor()
    payload = _json_body()
    products = payload.get("products")
    if not isinstance(products, list) or not products:
        raise ValidationError(code="items_required")
    result = _service(actor).suggest_quantities(
        actor,
        order_id,
        products,
        lead_time_days=_optional_float(payload.get("lead_time_days"), "lead_time_days"),
        default_lead_time_days=float(current_app.config.get("COVERAGE_DEFAULT_LEAD_TIME_DAYS") or 15),
    )
    return jsonify(result.payload), result.status_code


@negotiation_bp.route("/public/orders/<int:order_id>", methods=["GET"])
def public_order(order_id: int):
    tenant_id = scoped_tenant_id(request.args.get("tenant"))
    service = NegotiationService(tenant_id, sync_client=get_erp_sync_client())
    result = service.public_order(order_id)
    return jsonify(result.payload), result.status_code
